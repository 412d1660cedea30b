"""
verifier.py
------------
Verifies the proof token a wallet posts to the callback against the
authorization request issued for that session.

Token format (JWZ, compact):
    base64url(header) . base64url(payload) . base64url(zk proof)

The header names the circuit that proves the token itself ("auth"), the
payload is the AuthorizationResponse message, and every scope entry of the
response carries its own groth16 proof for one requirement of the request.

Collaborators:
- FSKeyLoader          : circuit verification keys from a local directory
- UniversalSchemaLoader: credential schemas over HTTP / an IPFS gateway
- EthStateResolver     : identity states from the on-chain state contract
- Groth16Verifier      : pairing check over BN254
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import List

import base58
import requests
from eth_utils import keccak
from web3 import Web3
from web3.exceptions import Web3Exception

from zkid_server import crypto_utils
from zkid_server.messages import (
    AUTHORIZATION_RESPONSE_TYPE,
    AuthorizationRequest,
    AuthorizationResponse,
    ProofRequirement,
    ZKProof,
)

logger = logging.getLogger(__name__)

AUTH_CIRCUIT_ID = "auth"
ATOMIC_QUERY_SIG_CIRCUIT_ID = "credentialAtomicQuerySig"
QUERY_VALUES_SIZE = 64

QUERY_OPERATORS = {
    "$noop": 0,
    "$eq": 1,
    "$lt": 2,
    "$gt": 3,
    "$in": 4,
    "$nin": 5,
}

# serialization:<name> annotations in the JSON-LD schema -> claim slot index
SLOT_INDEXES = {
    "IndexDataSlotA": 2,
    "IndexDataSlotB": 3,
    "ValueDataSlotA": 6,
    "ValueDataSlotB": 7,
}

# How long a replaced issuer non-revocation state is still accepted.
NON_REV_STATE_MAX_AGE = 3600  # seconds

STATE_ABI = [
    {
        "inputs": [{"name": "id", "type": "uint256"}],
        "name": "getState",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "state", "type": "uint256"}],
        "name": "getTransitionInfo",
        "outputs": [
            {"name": "", "type": "uint256"},
            {"name": "", "type": "uint256"},
            {"name": "", "type": "uint64"},
            {"name": "", "type": "uint64"},
            {"name": "", "type": "uint256"},
            {"name": "", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


class VerificationError(RuntimeError):
    """Base class: the token does not prove what the request asked for."""


class TokenFormatError(VerificationError):
    """Raised when the token cannot be decoded."""


class ProofError(VerificationError):
    """Raised when a groth16 proof does not verify or its key is unavailable."""


class MessageError(VerificationError):
    """Raised when the response message does not answer the request."""


class QueryError(VerificationError):
    """Raised when proven public signals do not match the requested query."""


class StateError(VerificationError):
    """Raised when an identity state cannot be confirmed on chain."""


# ===========================================================
# Token
# ===========================================================
@dataclass(frozen=True)
class Token:
    header: dict
    payload: dict
    zk_proof: dict
    raw: str

    @property
    def circuit_id(self) -> str:
        return self.header.get("circuitId", "")

    @property
    def proof(self) -> dict:
        return self.zk_proof["proof"]

    @property
    def pub_signals(self) -> List[str]:
        return [str(s) for s in self.zk_proof["pub_signals"]]


def parse_token(token_str: str) -> Token:
    parts = (token_str or "").strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise TokenFormatError("Token must have three non-empty segments")
    try:
        header, payload, zk_proof = (
            json.loads(crypto_utils.base64url_decode(p)) for p in parts
        )
    except (ValueError, UnicodeDecodeError) as e:
        raise TokenFormatError(f"Token segment is not base64url JSON: {e}") from e

    if not all(isinstance(x, dict) for x in (header, payload, zk_proof)):
        raise TokenFormatError("Token segments must be JSON objects")
    if header.get("alg") != "groth16":
        raise TokenFormatError(f"Unsupported token alg: {header.get('alg')!r}")
    if not header.get("circuitId"):
        raise TokenFormatError("Token header has no circuitId")
    if "proof" not in zk_proof or not isinstance(zk_proof.get("pub_signals"), list):
        raise TokenFormatError("Token proof segment lacks proof or pub_signals")
    return Token(header, payload, zk_proof, token_str)


# ===========================================================
# Identity helpers
# ===========================================================
def id_from_state(typ: bytes, state: int) -> int:
    """Genesis identity for `state`: typ(2) || genesis(27) || checksum(2), little-endian."""
    genesis = state.to_bytes(32, "little")[-27:]
    checksum = sum(typ + genesis) & 0xFFFF
    return int.from_bytes(typ + genesis + checksum.to_bytes(2, "little"), "little")


def is_genesis_state(identity: int, state: int) -> bool:
    typ = identity.to_bytes(31, "little")[:2]
    return id_from_state(typ, state) == identity


def id_to_string(identity: int) -> str:
    return base58.b58encode(identity.to_bytes(31, "little")).decode()


def sender_id(sender) -> str:
    """Bare base58 ID from a message sender, which may be a did:iden3 DID."""
    if not isinstance(sender, str):
        return ""
    return sender.rsplit(":", 1)[-1]


# ===========================================================
# Collaborators
# ===========================================================
class FSKeyLoader:
    """Reads snarkjs verification keys named <circuit_id>.json."""

    def __init__(self, keys_dir: str):
        self.keys_dir = keys_dir

    def load(self, circuit_id: str) -> dict:
        if os.path.basename(circuit_id) != circuit_id:
            raise ProofError(f"Invalid circuit id: {circuit_id!r}")
        path = os.path.join(self.keys_dir, f"{circuit_id}.json")
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise ProofError(f"No verification key for {circuit_id}: {e}") from e


class UniversalSchemaLoader:
    """Fetches schemas over http(s); ipfs://<cid> goes through the gateway."""

    def __init__(self, ipfs_gateway: str, timeout: float = 10, session=None):
        self.ipfs_gateway = ipfs_gateway
        self.timeout = timeout
        self.session = session or requests.Session()
        self._cache = {}

    def resolve_url(self, url: str) -> str:
        if url.startswith("ipfs://"):
            return f"https://{self.ipfs_gateway}/ipfs/{url[len('ipfs://'):]}"
        if url.startswith("http://") or url.startswith("https://"):
            return url
        raise QueryError(f"Unsupported schema URL: {url!r}")

    def load(self, url: str) -> bytes:
        if url in self._cache:
            return self._cache[url]
        target = self.resolve_url(url)
        logger.debug("Fetching schema %s", target)
        try:
            resp = self.session.get(target, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise QueryError(f"Failed to load schema {url}: {e}") from e
        self._cache[url] = resp.content
        return resp.content


@dataclass(frozen=True)
class ResolvedState:
    state: int
    latest: bool
    genesis: bool = False
    transition_timestamp: int = 0


class EthStateResolver:
    """Reads identity states from the state contract over JSON-RPC."""

    def __init__(self, rpc_url: str, contract_address: str, timeout: float = 10):
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.timeout = timeout
        self._contract = None

    @property
    def contract(self):
        if self._contract is None:
            w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
            self._contract = w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address), abi=STATE_ABI
            )
        return self._contract

    def resolve(self, identity: int, state: int) -> ResolvedState:
        try:
            contract_state = self.contract.functions.getState(identity).call()
            if contract_state == 0:
                if not is_genesis_state(identity, state):
                    raise StateError("State is not genesis and not registered on chain")
                return ResolvedState(state, latest=True, genesis=True)
            if contract_state == state:
                return ResolvedState(state, latest=True)

            info = self.contract.functions.getTransitionInfo(state).call()
        except (requests.RequestException, Web3Exception, ValueError) as e:
            raise StateError(f"State lookup failed: {e}") from e

        replaced_at, replaced_by, info_id = info[0], info[5], info[4]
        if info_id != identity:
            raise StateError("Transition info belongs to a different identity")
        if replaced_by == 0:
            raise StateError("State was replaced by an unknown state")
        return ResolvedState(state, latest=False, transition_timestamp=replaced_at)


class Groth16Verifier:

    def verify(self, proof: dict, vk: dict, pub_signals) -> bool:
        return crypto_utils.groth16_verify(vk, proof, pub_signals)


# ===========================================================
# Query checks
# ===========================================================
@dataclass(frozen=True)
class AtomicQuerySigPubSignals:
    issuer_auth_state: int
    user_id: int
    user_state: int
    challenge: int
    issuer_id: int
    issuer_claim_non_rev_state: int
    timestamp: int
    claim_schema: int
    slot_index: int
    operator: int
    values: List[int]

    @classmethod
    def from_signals(cls, signals) -> "AtomicQuerySigPubSignals":
        if len(signals) != 10 + QUERY_VALUES_SIZE:
            raise QueryError(
                f"Expected {10 + QUERY_VALUES_SIZE} public signals, got {len(signals)}"
            )
        try:
            s = [int(x) for x in signals]
        except ValueError as e:
            raise QueryError(f"Public signal is not an integer: {e}") from e
        return cls(
            issuer_auth_state=s[0],
            user_id=s[1],
            user_state=s[2],
            challenge=s[3],
            issuer_id=s[4],
            issuer_claim_non_rev_state=s[5],
            timestamp=s[6],
            claim_schema=s[7],
            slot_index=s[8],
            operator=s[9],
            values=s[10:],
        )


def schema_hash(schema_bytes: bytes, credential_type: str) -> int:
    """Last 16 bytes of keccak256(schema || type), read little-endian."""
    digest = keccak(schema_bytes + credential_type.encode())
    return int.from_bytes(digest[-16:], "little")


def field_slot_index(schema_bytes: bytes, credential_type: str, field_name: str) -> int:
    try:
        doc = json.loads(schema_bytes)
    except ValueError as e:
        raise QueryError(f"Schema is not JSON: {e}") from e

    contexts = doc.get("@context", []) if isinstance(doc, dict) else []
    if isinstance(contexts, dict):
        contexts = [contexts]
    for ctx in contexts:
        if not isinstance(ctx, dict) or credential_type not in ctx:
            continue
        type_def = ctx[credential_type]
        fields = type_def.get("@context") if isinstance(type_def, dict) else None
        field_def = fields.get(field_name) if isinstance(fields, dict) else None
        annotation = field_def.get("@type", "") if isinstance(field_def, dict) else ""
        slot = SLOT_INDEXES.get(annotation.split(":")[-1])
        if slot is None:
            raise QueryError(f"Field {field_name} has no slot serialization in schema")
        return slot
    raise QueryError(f"Type {credential_type} not found in schema")


def parse_predicate(predicate: dict):
    """{'Field': {'$op': value}} -> (field, operator code, 64 padded values)."""
    if not predicate:
        return None, QUERY_OPERATORS["$noop"], [0] * QUERY_VALUES_SIZE
    if len(predicate) != 1:
        raise QueryError("Only one field per query is supported")
    field_name, condition = next(iter(predicate.items()))
    if not isinstance(condition, dict) or len(condition) != 1:
        raise QueryError(f"Field {field_name} needs exactly one operator")
    op, value = next(iter(condition.items()))
    if op not in QUERY_OPERATORS:
        raise QueryError(f"Unknown operator {op}")

    values = value if isinstance(value, list) else [value]
    if len(values) > QUERY_VALUES_SIZE:
        raise QueryError(f"At most {QUERY_VALUES_SIZE} values allowed")
    try:
        values = [int(v) for v in values]
    except (TypeError, ValueError) as e:
        raise QueryError(f"Query values must be integers: {e}") from e
    return field_name, QUERY_OPERATORS[op], values + [0] * (QUERY_VALUES_SIZE - len(values))


# ===========================================================
# Verifier
# ===========================================================
class Verifier:

    def __init__(self, key_loader, schema_loader, state_resolver, proof_verifier=None):
        self.key_loader = key_loader
        self.schema_loader = schema_loader
        self.state_resolver = state_resolver
        self.proof_verifier = proof_verifier or Groth16Verifier()

    def full_verify(self, token_str: str, request: AuthorizationRequest) -> AuthorizationResponse:
        """
        Checks the token proof, the response message and every requested
        proof. Returns the parsed response, raises VerificationError otherwise.
        """
        token = parse_token(token_str)
        user_id = self.verify_token(token)

        try:
            response = AuthorizationResponse.from_dict(token.payload)
        except (KeyError, TypeError, AttributeError) as e:
            raise MessageError(f"Malformed authorization response: {e}") from e

        self.verify_auth_response(response, request, user_id)
        return response

    def _check_proof(self, circuit_id: str, proof: dict, pub_signals) -> None:
        vk = self.key_loader.load(circuit_id)
        if not self.proof_verifier.verify(proof, vk, pub_signals):
            raise ProofError(f"Proof for circuit {circuit_id} is not valid")

    def verify_token(self, token: Token) -> int:
        """Checks the auth proof and returns the identity it was made for."""
        if token.circuit_id != AUTH_CIRCUIT_ID:
            raise TokenFormatError(f"Token must be proven with {AUTH_CIRCUIT_ID}, not {token.circuit_id}")
        self._check_proof(token.circuit_id, token.proof, token.pub_signals)

        signals = token.pub_signals
        if len(signals) != 3:
            raise ProofError(f"auth circuit has 3 public signals, got {len(signals)}")
        try:
            user_state, user_id = int(signals[1]), int(signals[2])
        except ValueError as e:
            raise ProofError(f"Public signal is not an integer: {e}") from e
        self.state_resolver.resolve(user_id, user_state)
        return user_id

    def verify_auth_response(self, response: AuthorizationResponse,
                             request: AuthorizationRequest, user_id: int) -> None:
        if response.type != AUTHORIZATION_RESPONSE_TYPE:
            raise MessageError(f"Unexpected message type {response.type!r}")
        if sender_id(response.from_) != id_to_string(user_id):
            raise MessageError("Response sender is not the proven identity")
        if response.thid != request.thid:
            raise MessageError("Response thread id does not match the request")
        if response.to is not None and response.to != request.from_:
            raise MessageError("Response is addressed to another verifier")

        for requirement in request.scope:
            proof = response.proof_for(requirement.id)
            if proof is None:
                raise MessageError(f"No proof for requirement {requirement.id}")
            if proof.circuit_id != requirement.circuit_id:
                raise MessageError(
                    f"Requirement {requirement.id} needs {requirement.circuit_id}, got {proof.circuit_id}"
                )
            self._check_proof(proof.circuit_id, proof.proof, proof.pub_signals)
            self.verify_query(requirement, proof, user_id)

    def verify_query(self, requirement: ProofRequirement, proof: ZKProof, user_id: int) -> None:
        if requirement.circuit_id != ATOMIC_QUERY_SIG_CIRCUIT_ID:
            raise QueryError(f"Unsupported circuit {requirement.circuit_id}")
        signals = AtomicQuerySigPubSignals.from_signals(proof.pub_signals)
        if signals.user_id != user_id:
            raise QueryError(f"Proof for requirement {requirement.id} was made by another identity")

        allowed = requirement.allowed_issuers
        if "*" not in allowed and id_to_string(signals.issuer_id) not in allowed:
            raise QueryError("Issuer is not allowed")

        schema = requirement.schema
        schema_bytes = self.schema_loader.load(schema["url"])
        if schema_hash(schema_bytes, schema["type"]) != signals.claim_schema:
            raise QueryError("Proof was made for a different claim schema")

        field_name, operator, values = parse_predicate(requirement.predicate)
        if operator != signals.operator:
            raise QueryError("Operator does not match the query")
        if field_name is not None:
            if field_slot_index(schema_bytes, schema["type"], field_name) != signals.slot_index:
                raise QueryError(f"Proof was made for a different field than {field_name}")
            if values != signals.values:
                raise QueryError("Values do not match the query")

        self.state_resolver.resolve(signals.issuer_id, signals.issuer_auth_state)
        non_rev = self.state_resolver.resolve(signals.issuer_id, signals.issuer_claim_non_rev_state)
        if not non_rev.latest and time.time() - non_rev.transition_timestamp > NON_REV_STATE_MAX_AGE:
            raise StateError("Issuer non-revocation state is outdated")


def build_verifier(config) -> Verifier:
    return Verifier(
        FSKeyLoader(config.keys_dir),
        UniversalSchemaLoader(config.ipfs_gateway, timeout=config.http_timeout),
        EthStateResolver(config.rpc_url, config.contract_address, timeout=config.http_timeout),
    )
