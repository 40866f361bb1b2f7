#!/usr/bin/env python3
# Exit Hook Module
# Prints the replay transcript on every exit, successful or not

import signal

from .command import log_path
from .plan import transcript

TRANSCRIPT_HEADER = "ZFS installation configuration for unattended installation:"


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


class ExitHook:
    """Context manager wrapped around the whole run.

    Whatever part of the plan has been collected when the block exits is
    written out as ``export ZFS_*=...`` lines, to the terminal and to
    ``exit_transcript.sh`` in the log directory. SIGTERM is turned into
    SystemExit while the hook is active so it unwinds through here too.
    """

    def __init__(self, plan, reveal_secrets=False):
        self.plan = plan
        self.reveal_secrets = reveal_secrets
        self._previous_handler = None

    def __enter__(self):
        self._previous_handler = signal.signal(signal.SIGTERM, _terminate)
        return self

    def __exit__(self, exc_type, exc, tb):
        signal.signal(signal.SIGTERM, self._previous_handler or signal.SIG_DFL)
        self.emit()
        return False

    def render(self):
        return f"\n{TRANSCRIPT_HEADER}\n\n{transcript(self.plan, reveal_secrets=self.reveal_secrets)}\n"

    def emit(self):
        text = self.render()
        print(text)
        try:
            with open(log_path("exit_transcript.sh"), "w") as f:
                f.write(text)
        except OSError as e:
            print(f"Warning: Could not save the exit transcript: {e}")
        return text
