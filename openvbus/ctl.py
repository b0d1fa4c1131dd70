"""Command-line tool that sends one command to the bus daemon."""

from __future__ import annotations

import sys
from typing import Optional, Sequence

from openvbus.transport import TransportError, default_address, send_command


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Join the arguments into a command, send it and print the reply."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("Usage: vbusctl <command...>", file=sys.stderr)
        return 1
    cmd = " ".join(args)
    try:
        resp = send_command(cmd, default_address())
    except TransportError:
        print("Failed to contact vbusd", file=sys.stderr)
        return 2
    print(resp)
    return 0


if __name__ == "__main__":
    sys.exit(main())