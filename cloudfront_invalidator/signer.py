import base64
import hashlib
import hmac
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Dict, Optional, Union


def format_http_date(now: Optional[datetime] = None) -> str:
    """Formats a timestamp as an RFC 1123 date in GMT, e.g. 'Thu, 05 Jul 2012 10:00:00 GMT'"""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return format_datetime(now, usegmt=True)


def sign(secret: Union[str, bytes], string_to_sign: str) -> str:
    """Base64 HMAC-SHA1 signature, without the trailing newline"""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    digest = hmac.new(secret, string_to_sign.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_headers(
    access_key_id: str,
    secret: Union[str, bytes],
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """Builds the Date and Authorization headers required on every API call"""
    date = format_http_date(now)
    return {
        "Date": date,
        "Authorization": f"AWS {access_key_id}:{sign(secret, date)}",
    }
