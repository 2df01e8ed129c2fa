"""Secondary command directives.

The primary command may ask for follow-up commands by printing lines of
the form ``EXEC: <command>``. Leading and trailing whitespace around the
line and around the command is ignored; a directive with no command is
skipped.
"""

from __future__ import annotations

DIRECTIVE_PREFIX = "EXEC:"


def parse_directives(output: str) -> list[str]:
    """Extract secondary commands from primary command output.

    Args:
        output: Captured primary command output.

    Returns:
        Commands in the order they appear.

    Example:
        >>> parse_directives("done\\nEXEC: npm test\\n  EXEC:ls -la  \\nEXEC:   ")
        ['npm test', 'ls -la']
    """
    commands: list[str] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped.startswith(DIRECTIVE_PREFIX):
            continue
        command = stripped[len(DIRECTIVE_PREFIX) :].strip()
        if command:
            commands.append(command)
    return commands
