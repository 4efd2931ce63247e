"""Public identifiers handed to operators and agents."""

import secrets

# No 0/O or 1/I/L
ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ID_LENGTH = 16

AGENT_PREFIX = "RAGENT"
TRANSACTION_PREFIX = "RTXN"
DISPUTE_PREFIX = "RDISP"
ESCALATION_PREFIX = "RESC"


def generate_external_id(prefix: str, length: int = ID_LENGTH) -> str:
    """Return e.g. ``RDISP-7KQ2M9XH4TBW3NCE`` using the OS CSPRNG."""
    body = "".join(secrets.choice(ID_ALPHABET) for _ in range(length))
    return f"{prefix}-{body}"


def new_agent_id() -> str:
    return generate_external_id(AGENT_PREFIX)


def new_transaction_id() -> str:
    return generate_external_id(TRANSACTION_PREFIX)


def new_dispute_id() -> str:
    return generate_external_id(DISPUTE_PREFIX)


def new_escalation_id() -> str:
    return generate_external_id(ESCALATION_PREFIX)


def looks_like(reference: str, prefix: str) -> bool:
    return reference.startswith(f"{prefix}-") and len(reference) == len(prefix) + 1 + ID_LENGTH
