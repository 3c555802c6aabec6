# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""tinyftpd installer.

$ python setup.py install
"""

import ast
import os
import sys

HERE = os.path.abspath(os.path.dirname(__file__))

# Test deps, installable via `pip install .[test]`.
TEST_DEPS = [
    "psutil",
    "pytest",
    "setuptools",
]

# Development deps, installable via `pip install .[dev]`.
DEV_DEPS = [
    "black",
    "coverage",
    "pytest-cov",
    "ruff",
]


def get_version():
    INIT = os.path.join(HERE, "tinyftpd", "__init__.py")
    with open(INIT) as f:
        for line in f:
            if line.startswith("__ver__"):
                ret = ast.literal_eval(line.strip().split(" = ")[1])
                assert ret.count(".") == 2, ret
                for num in ret.split("."):
                    assert num.isdigit(), ret
                return ret
        raise ValueError("couldn't find version string")


with open(os.path.join(HERE, "README.rst")) as f:
    long_description = f.read()


def main():
    from setuptools import setup  # noqa: PLC0415

    setup(
        name="tinyftpd",
        version=get_version(),
        description="Small sandboxed active-mode FTP server",
        long_description=long_description,
        long_description_content_type="text/x-rst",
        license="MIT",
        platforms="Platform Independent",
        author="Giampaolo Rodola'",
        author_email="g.rodola@gmail.com",
        url="https://github.com/giampaolo/pyftpdlib/",
        packages=["tinyftpd", "tinyftpd.test"],
        # fmt: off
        keywords=["ftp", "server", "ftpd", "daemon", "asynchronous",
                  "nonblocking", "eventdriven", "rfc959", "chroot"],
        # fmt: on
        install_requires=[
            "pyasyncore;python_version>='3.12'",
            "pyasynchat;python_version>='3.12'",
        ],
        extras_require={
            "dev": DEV_DEPS,
            "test": TEST_DEPS,
        },
        entry_points={
            "console_scripts": ["tinyftpd = tinyftpd.__main__:main"],
        },
        python_requires=">=3.9",
        zip_safe=False,
        classifiers=[
            "Development Status :: 4 - Beta",
            "Environment :: Console",
            "Intended Audience :: Developers",
            "Intended Audience :: System Administrators",
            "Operating System :: OS Independent",
            "Programming Language :: Python",
            "Programming Language :: Python :: 3",
            "Topic :: Internet :: File Transfer Protocol (FTP)",
            "Topic :: System :: Filesystems",
        ],
    )


if sys.version_info[0] < 3:  # noqa: UP036
    sys.exit("Python 2 is not supported.")

if __name__ == "__main__":
    main()
