"""Run the rlexec command line."""

from __future__ import annotations

from rlexec.cli import RLEXEC, rlexec_app

if __name__ == "__main__":
    rlexec_app(prog_name=RLEXEC)
