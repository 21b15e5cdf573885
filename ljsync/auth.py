"""Challenge-response authentication for the flat protocol.

Every authenticated request carries a fresh challenge from ``getchallenge``
and ``md5hex(challenge + md5hex(password))``.  The hash has to match the
server's bit for bit, so it is not configurable.
"""

import hashlib
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Credential:
    username: str
    password: str
    usejournal: Optional[str] = None   # act as this journal (e.g. a community)

    @property
    def journal(self) -> str:
        return self.usejournal or self.username

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, usejournal={self.usejournal!r})"


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def derive_auth_response(challenge: str, password: str) -> str:
    return md5_hex(challenge + md5_hex(password))


def auth_fields(credential: Credential, challenge: str) -> Dict[str, str]:
    fields = {
        "user": credential.username,
        "auth_method": "challenge",
        "auth_challenge": challenge,
        "auth_response": derive_auth_response(challenge, credential.password),
    }
    if credential.usejournal:
        fields["usejournal"] = credential.usejournal
    return fields
