"""Classification of installer process exit codes.

Every component that reports an installation failure describes the exit
code through :func:`explain` so the stored error text is identical no matter
which caller produced it.
"""

from __future__ import annotations

from typing import Any, List, Tuple

__all__ = ["UNKNOWN_ERROR", "EXIT_CODE_RANGES", "explain"]

UNKNOWN_ERROR = "Unknown error"

# Inclusive, non-overlapping ranges ordered by lower bound.
EXIT_CODE_RANGES: List[Tuple[int, int, str]] = [
    (1, 2, "Shell: general error or misuse of shell builtins"),
    (6, 35, "curl: network transfer failed"),
    (100, 102, "APT: package manager error"),
    (124, 143, "Command timed out, was not executable or was killed by a signal"),
    (150, 154, "Systemd: service or unit failure"),
    (160, 162, "Python: environment or dependency setup failed"),
    (170, 173, "PostgreSQL: connection or query failure"),
    (180, 183, "MySQL/MariaDB: connection or query failure"),
    (190, 193, "MongoDB: connection or query failure"),
    (200, 231, "Proxmox: container provisioning failed"),
    (243, 249, "Node.js: runtime failure"),
    (255, 255, "DPKG: fatal internal error"),
]


def explain(code: Any) -> str:
    """Return the fixed description for ``code``.

    Never raises: values that cannot be read as an integer, and integers that
    fall outside every known range, map to :data:`UNKNOWN_ERROR`.
    """

    try:
        value = int(code)
    except (TypeError, ValueError):
        return UNKNOWN_ERROR
    for lower, upper, description in EXIT_CODE_RANGES:
        if lower <= value <= upper:
            return description
    return UNKNOWN_ERROR
