"""
messages.py
------------
iden3comm authorization messages exchanged with the wallet.

- AuthorizationRequest : what the server asks for (reason, callback, scope)
- ProofRequirement     : one entry of the request scope (circuit + query)
- AuthorizationResponse: what the wallet sends back inside the proof token
- ZKProof              : one proof entry of the response scope

All types serialize with the wire key names (callbackUrl, circuit_id, from...).
"""

import copy
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

MEDIA_TYPE_PLAIN = "application/iden3comm-plain-json"
AUTHORIZATION_REQUEST_TYPE = "https://iden3-communication.io/authorization/1.0/request"
AUTHORIZATION_RESPONSE_TYPE = "https://iden3-communication.io/authorization/1.0/response"


@dataclass(frozen=True)
class ProofRequirement:
    id: int
    circuit_id: str
    query: dict

    @property
    def allowed_issuers(self) -> List[str]:
        return list(self.query.get("allowedIssuers", []))

    @property
    def schema(self) -> dict:
        return dict(self.query.get("schema", {}))

    @property
    def predicate(self) -> dict:
        return copy.deepcopy(self.query.get("req", {}))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "circuit_id": self.circuit_id,
            "rules": {"query": copy.deepcopy(self.query)},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProofRequirement":
        return cls(
            id=data["id"],
            circuit_id=data["circuit_id"],
            query=copy.deepcopy(data.get("rules", {}).get("query", {})),
        )


@dataclass
class AuthorizationRequest:
    id: str
    thid: str
    from_: str
    callback_url: str
    reason: str
    message: str = ""
    scope: List[ProofRequirement] = field(default_factory=list)
    typ: str = MEDIA_TYPE_PLAIN
    type: str = AUTHORIZATION_REQUEST_TYPE

    def add_requirement(self, requirement: ProofRequirement) -> None:
        self.scope = [*self.scope, requirement]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "typ": self.typ,
            "type": self.type,
            "thid": self.thid,
            "body": {
                "callbackUrl": self.callback_url,
                "reason": self.reason,
                "message": self.message,
                "scope": [r.to_dict() for r in self.scope],
            },
            "from": self.from_,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuthorizationRequest":
        body = data.get("body", {})
        return cls(
            id=data["id"],
            thid=data.get("thid", data["id"]),
            from_=data["from"],
            callback_url=body.get("callbackUrl", ""),
            reason=body.get("reason", ""),
            message=body.get("message", ""),
            scope=[ProofRequirement.from_dict(r) for r in body.get("scope") or []],
            typ=data.get("typ", MEDIA_TYPE_PLAIN),
            type=data.get("type", AUTHORIZATION_REQUEST_TYPE),
        )


def create_authorization_request(reason: str, message: str, audience: str,
                                 callback_url: str) -> AuthorizationRequest:
    """New request with a fresh thread id; id and thid start out equal."""
    request_id = str(uuid.uuid4())
    return AuthorizationRequest(
        id=request_id,
        thid=request_id,
        from_=audience,
        callback_url=callback_url,
        reason=reason,
        message=message,
    )


@dataclass(frozen=True)
class ZKProof:
    id: int
    circuit_id: str
    proof: dict
    pub_signals: List[str]

    @classmethod
    def from_dict(cls, data: dict) -> "ZKProof":
        return cls(
            id=data["id"],
            circuit_id=data["circuit_id"],
            proof=data["proof"],
            pub_signals=[str(s) for s in data["pub_signals"]],
        )


@dataclass
class AuthorizationResponse:
    id: str
    thid: str
    from_: str
    to: Optional[str] = None
    message: str = ""
    scope: List[ZKProof] = field(default_factory=list)
    typ: str = MEDIA_TYPE_PLAIN
    type: str = AUTHORIZATION_RESPONSE_TYPE

    def proof_for(self, requirement_id) -> Optional[ZKProof]:
        for p in self.scope:
            if p.id == requirement_id:
                return p
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "AuthorizationResponse":
        body = data.get("body", {})
        return cls(
            id=data["id"],
            thid=data.get("thid", data["id"]),
            from_=data["from"],
            to=data.get("to"),
            message=body.get("message", ""),
            scope=[ZKProof.from_dict(p) for p in body.get("scope") or []],
            typ=data.get("typ", MEDIA_TYPE_PLAIN),
            type=data.get("type", ""),
        )
