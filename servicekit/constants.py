"""
Wire-level names shared by every service that uses servicekit.

Header names and their text encoding, the webhook sentinel and the Redis
key prefixes must stay identical across services, so they live here and nowhere else.
"""

from __future__ import annotations

from enum import Enum
from urllib.parse import quote, unquote

WEBHOOK_SOURCE_TYPE = "webhook"
STREAM_PAYLOAD_FIELD = "payload"
BUSYGROUP = "BUSYGROUP"

# header values are ASCII on the wire; only non-ASCII text and "%" are escaped
_HEADER_SAFE = "".join(chr(c) for c in range(0x20, 0x7F) if chr(c) != "%")


class Headers:
    INTERNAL_REQUEST = "X-Internal-Request"
    SOURCE_TYPE = "X-Source-Type"
    USER_COMPANY = "X-User-Company"
    USER_NAME = "X-User-Name"
    USER_ROLES = "X-User-Roles"
    USER_AGENT = "User-Agent"
    CONTENT_TYPE = "Content-Type"


class KeyPrefix:
    COMPANY_SETTINGS = "company_settings"
    WAP_PHONE_NUMBER_ID = "wapPhoneNumberId"
    MSN_PAGE_ID = "msnPageId"
    IGM_BUSINESS_ACCOUNT_ID = "igmBusinessAccountId"


class MetaChannel(str, Enum):
    WHATSAPP = "whatsapp"
    MESSENGER = "messenger"
    INSTAGRAM = "instagram"


def encode_header_text(value: str) -> str:
    return quote(value, safe=_HEADER_SAFE)


def decode_header_text(value: str) -> str:
    return unquote(value)
