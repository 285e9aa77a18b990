"""
Auto Sign-in — rollcall answering service
=========================================
Polls the course service for open rollcalls on behalf of every configured
account and answers them: radar rollcalls with a coordinate (fitted from
reported distances when no known point is accepted), number rollcalls by
searching the 4-digit code space. A per-account daily window starts and
stops each account automatically.

Usage:
    python autosign.py --config data/config.json
"""

import sys

from autosign_core.runner import run_with_auto_restart


if __name__ == "__main__":
    sys.exit(run_with_auto_restart())
