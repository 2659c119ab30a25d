import hmac

from creditledger.core.exceptions import UnauthorizedError


def secrets_match(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison; an unset expected secret never matches."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_service_token(token: str | None, expected: str) -> None:
    if not secrets_match(token, expected):
        raise UnauthorizedError("Invalid service token")


def verify_cron_authorization(authorization: str | None, cron_secret: str) -> None:
    """Cron triggers send `Authorization: Bearer <CRON_SECRET>`."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets_match(token.strip(), cron_secret):
        raise UnauthorizedError("Invalid cron credentials")
