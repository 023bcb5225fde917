"""
Display form of secrets for responses, logs and audit records.
"""

MASK = '***'
MIN_PARTIAL_LENGTH = 10


def mask(secret: str) -> str:
    """
    Mask a secret for display.

    Secrets shorter than 10 characters are fully redacted. Longer ones keep
    their first 5 and last 3 characters, e.g. 'sk-raw-api-key-1234567890'
    becomes 'sk-ra***890'.
    """
    if len(secret) < MIN_PARTIAL_LENGTH:
        return MASK
    return f"{secret[:5]}{MASK}{secret[-3:]}"
