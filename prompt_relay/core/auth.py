from __future__ import annotations

import hmac

SECRET_HEADER = "x-proxy-secret"


def is_authorized(provided: str | None, expected: str | None) -> bool:
    # An unconfigured secret never authorizes, not even an empty header.
    if not expected or not provided:
        return False

    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
