"""
Whether an article's body may be shown for the current request.
"""

from datetime import datetime, timezone

from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

COOKIE_PREFIX = "unlocked_"
TOKEN_MAX_AGE = 365 * 24 * 3600


def is_locked(article: dict, settings: dict, has_unlock_token: bool) -> bool:
    # ➊ key verification switched off site-wide
    if settings.get("enable_key_verification") is False:
        return False
    # ➋ switched off for this article (missing flag means "requires a key")
    if article.get("requiresKey") is False:
        return False
    # ➌ this browser already unlocked it
    return not has_unlock_token


class UnlockTokens:
    """
    Signed per-article tokens handed out after a successful redemption.

    The payload is ``<article id>:<expiry as unix seconds>``; the expiry is
    empty for unlimited keys.  Article ids never contain ``:``.
    """

    def __init__(self, secret_key: str):
        self.signer = TimestampSigner(secret_key, salt="article-unlock")

    @staticmethod
    def cookie_name(article_id: str) -> str:
        return f"{COOKIE_PREFIX}{article_id}"

    def issue(self, article_id: str, expires: datetime | None = None) -> str:
        until = "" if expires is None else str(int(expires.timestamp()))
        return self.signer.sign(f"{article_id}:{until}").decode()

    def is_valid(
        self,
        token: str | None,
        article_id: str,
        now: datetime | None = None,
        max_age: int = TOKEN_MAX_AGE,
    ) -> bool:
        if not token:
            return False
        try:
            payload = self.signer.unsign(token, max_age=max_age).decode()
        except SignatureExpired:
            return False
        except BadSignature:
            return False

        signed_id, _, until = payload.rpartition(":")
        if signed_id != article_id:
            return False
        if not until:
            return True
        now = now or datetime.now(timezone.utc)
        return now.timestamp() < int(until)

    def has_valid_unlock_token(self, cookies, article_id: str, now: datetime | None = None) -> bool:
        return self.is_valid(cookies.get(self.cookie_name(article_id)), article_id, now)
