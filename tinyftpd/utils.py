# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import os
import sys

__all__ = ["hilite", "strerror", "term_supports_colors"]

# ANSI codes of the colours used by the log formatter and the CLI help
_COLORS = {
    None: "29",
    "blue": "34",
    "green": "32",
    "lightblue": "38;5;66",
    "orange": "38;5;208",
    "red": "91",
    "white": "97",
    "yellow": "93",
}

_colors_supported = None


def term_supports_colors():
    """Whether both stdout and stderr are colour capable terminals.
    The answer is computed once per process.
    """
    global _colors_supported

    if _colors_supported is None:
        _colors_supported = _detect_colors()
    return _colors_supported


def _detect_colors():
    if os.name == "nt":
        return False
    if not (sys.stdout.isatty() and sys.stderr.isatty()):
        return False
    try:
        import curses  # noqa: PLC0415

        curses.setupterm()
        return curses.tigetnum("colors") > 0
    except Exception:
        return False


def hilite(s, color=None, bold=False):
    """Wrap 's' in ANSI escapes, or return it unchanged if the
    terminal can't show colours.
    """
    if not term_supports_colors():
        return s
    if color not in _COLORS:
        choices = sorted(str(x) for x in _COLORS)
        msg = f"invalid color {color!r}; choose amongst {choices}"
        raise ValueError(msg)
    attr = _COLORS[color]
    if bold:
        attr += ";1"
    return f"\x1b[{attr}m{s}\x1b[0m"


def strerror(err):
    """Turn an exception raised by a filesystem or socket call into
    the text sent after a reply code (e.g. "550 No such file or
    directory.").
    """
    if isinstance(err, OSError) and err.errno is not None:
        return os.strerror(err.errno)
    return str(err).rstrip(".")
