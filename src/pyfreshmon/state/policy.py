"""Change-gating policy.

This module intentionally contains *no* payload parsing. The ingestion layer
hands over an already-decoded code; the policy only decides whether it is a
transition worth persisting.
"""

from __future__ import annotations


def is_transition(last_code: str | None, incoming_code: str) -> bool:
    """Decide whether *incoming_code* should produce a persisted record.

    Policy:
    - No previous code for the device: always a transition (first observation).
    - Otherwise: a transition only when the code differs.
    """
    if last_code is None:
        return True
    return last_code != incoming_code
