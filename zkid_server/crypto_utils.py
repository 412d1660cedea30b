import base64
import json
import logging
import os

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError
from py_ecc.optimized_bn128 import (
    FQ,
    FQ2,
    add,
    b,
    b2,
    curve_order,
    is_on_curve,
    multiply,
    pairing,
)

logger = logging.getLogger(__name__)


# Base64url encoding/decoding without padding
def base64url_encode(data: bytes) -> str:
    encoded = base64.b64encode(data).decode('ascii')
    return encoded.replace('+', '-').replace('/', '_').replace('=', '')

def base64url_decode(data: str) -> bytes:
    # Add padding if needed
    padding = 4 - len(data) % 4
    if padding != 4:
        data += '=' * padding
    decoded = data.replace('-', '+').replace('_', '/')
    return base64.b64decode(decoded, validate=True)

def canonical_json(obj) -> bytes:
    """Stable byte form of a JSON object, used as the signing input."""
    return json.dumps(obj, sort_keys=True, separators=(',', ':')).encode()


# ===========================================================
# Ed25519 request signing
# ===========================================================
def load_signing_key(path: str) -> SigningKey:
    """
    Loads a hex-encoded 32-byte Ed25519 seed from `path`.
    Generates and writes a new one when the file does not exist.
    """
    if os.path.exists(path):
        with open(path, "r") as f:
            seed = bytes.fromhex(f.read().strip())
        return SigningKey(seed)

    logger.warning("Signing key %s not found, generating a new one", path)
    key = SigningKey.generate()
    try:
        with open(path, "w") as f:
            f.write(bytes(key).hex())
        os.chmod(path, 0o600)
    except OSError as e:
        logger.warning("Could not persist signing key to %s: %s", path, e)
    return key


def sign_payload(key: SigningKey, obj) -> str:
    signature = key.sign(canonical_json(obj)).signature
    return base64url_encode(signature)

def verify_payload(verify_key: VerifyKey, obj, signature_b64: str) -> bool:
    try:
        verify_key.verify(canonical_json(obj), base64url_decode(signature_b64))
        return True
    except (BadSignatureError, ValueError):
        return False


# ===========================================================
# Groth16 over BN254: e(A, B) == e(alpha, beta) * e(vk_x, gamma) * e(C, delta)
# ===========================================================
def _g1(coords) -> tuple:
    """snarkjs G1 point [x, y, z] -> projective py_ecc point."""
    x, y, z = (int(c) for c in coords[:3])
    return (FQ(x), FQ(y), FQ(z))

def _g2(coords) -> tuple:
    """snarkjs G2 point [[x0, x1], [y0, y1], [z0, z1]] -> projective py_ecc point."""
    x, y, z = ([int(c) for c in pair] for pair in coords[:3])
    return (FQ2(x), FQ2(y), FQ2(z))

def groth16_verify(vk: dict, proof: dict, pub_signals) -> bool:
    """
    Verifies a snarkjs-format groth16 proof against a verification key.
    Returns False on any malformed input rather than raising.
    """
    try:
        signals = [int(s) for s in pub_signals]
        ic = [_g1(p) for p in vk["IC"]]
        if len(signals) + 1 != len(ic):
            logger.debug("groth16: %d signals for %d IC points", len(signals), len(ic))
            return False
        if any(s < 0 or s >= curve_order for s in signals):
            return False

        alpha = _g1(vk["vk_alpha_1"])
        beta = _g2(vk["vk_beta_2"])
        gamma = _g2(vk["vk_gamma_2"])
        delta = _g2(vk["vk_delta_2"])
        a = _g1(proof["pi_a"])
        b_pt = _g2(proof["pi_b"])
        c = _g1(proof["pi_c"])
    except (KeyError, TypeError, ValueError) as e:
        logger.debug("groth16: malformed input: %s", e)
        return False

    for p in (a, c, alpha, *ic):
        if not is_on_curve(p, b):
            return False
    for p in (b_pt, beta, gamma, delta):
        if not is_on_curve(p, b2):
            return False

    vk_x = ic[0]
    for s, point in zip(signals, ic[1:]):
        vk_x = add(vk_x, multiply(point, s))

    lhs = pairing(b_pt, a)
    rhs = pairing(beta, alpha) * pairing(gamma, vk_x) * pairing(delta, c)
    return lhs == rhs
