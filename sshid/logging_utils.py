"""
Coloured stderr logging using ANSI codes, plus SSH config syntax highlighting.
"""
import os
import re
import sys
from typing import TextIO


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    GRAY = "\033[90m"


HOST_LINE_RE = re.compile(r'^(\s*)(Host|Match)(\s*=\s*|\s+)(.+)$', re.IGNORECASE)
DIRECTIVE_LINE_RE = re.compile(r'^(\s*)([A-Za-z][A-Za-z0-9]*)(\s*=\s*|\s+)(.+)$')


def _should_use_colors(stream: TextIO = None) -> bool:
    """Determine if colors should be used on the given stream (stderr by default)."""
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("TERM", "") == "dumb":
        return False
    if os.environ.get("FORCE_COLOR") == "1":
        return True
    stream = stream if stream is not None else sys.stderr
    return hasattr(stream, "isatty") and stream.isatty()


def _colorize(text: str, color: str, bold: bool = False, stream: TextIO = None) -> str:
    """Apply color to text if colors are enabled."""
    if not _should_use_colors(stream):
        return text
    bold_code = Colors.BOLD if bold else ""
    return f"{bold_code}{color}{text}{Colors.RESET}"


def _emit(label: str, color: str, message: str) -> None:
    prefix = _colorize(label, color, bold=True)
    body = _colorize(str(message).replace('\r', '').rstrip(), color)
    print(f"{prefix} {body}", file=sys.stderr, flush=True)


def log_error(message: str) -> None:
    """Log an error message in red."""
    _emit("ERROR:", Colors.RED, message)


def log_warn(message: str) -> None:
    """Log a warning message in yellow."""
    _emit("WARNING:", Colors.YELLOW, message)


def log_info(message: str) -> None:
    """Log an info message in blue."""
    _emit("INFO:", Colors.BLUE, message)


def log_success(message: str) -> None:
    """Log a success message in green."""
    _emit("✓", Colors.GREEN, message)


def log_debug(message: str) -> None:
    """Log a debug message in magenta (only if DEBUG=1)."""
    if os.environ.get("DEBUG") != "1":
        return
    _emit("DEBUG:", Colors.MAGENTA, message)


def log_note(message: str) -> None:
    """Log a note message in cyan."""
    _emit("NOTE:", Colors.CYAN, message)


def highlight_line(line: str, stream: TextIO = None) -> str:
    """Syntax highlight a line of SSH config for display on stream (stdout by default)."""
    stream = stream if stream is not None else sys.stdout
    if not _should_use_colors(stream):
        return line

    def paint(text: str, *codes: str) -> str:
        return "".join(codes) + text + Colors.RESET

    host_match = HOST_LINE_RE.match(line)
    if host_match:
        indent, keyword, sep, values = host_match.groups()
        return f"{indent}{paint(keyword, Colors.BOLD, Colors.BLUE)}{sep}{paint(values, Colors.YELLOW)}"

    if re.match(r'^\s*#', line):
        return paint(line, Colors.DIM, Colors.GRAY)

    directive_match = DIRECTIVE_LINE_RE.match(line)
    if directive_match:
        indent, directive, sep, value = directive_match.groups()
        return f"{indent}{paint(directive, Colors.CYAN)}{sep}{paint(value, Colors.YELLOW)}"

    return line
