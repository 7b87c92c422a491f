import re
from enum import StrEnum


class RequestReplyIntent(StrEnum):
    ACCEPT = "accept"
    DECLINE = "decline"
    UNKNOWN = "unknown"


_ACCEPT_WORDS = {"yes", "y", "accept", "accepted", "ok", "okay", "sure", "confirm"}
_DECLINE_WORDS = {"no", "n", "decline", "reject", "cant", "cannot", "busy", "pass"}


async def parse_request_reply_intent(body: str) -> RequestReplyIntent:
    """
    Classify a doctor's free-text reply to a request notification.
    The first recognised word wins; "yes, but no later than 5" is an accept.
    """
    words = re.findall(r"[a-z]+", body.lower().replace("'", ""))
    for word in words:
        if word in _ACCEPT_WORDS:
            return RequestReplyIntent.ACCEPT
        if word in _DECLINE_WORDS:
            return RequestReplyIntent.DECLINE
    return RequestReplyIntent.UNKNOWN
