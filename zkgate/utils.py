# zkgate/utils.py
import hashlib
from jose import jwt, JWTError

JWT_ALG = "HS256"
FIELD_BITS = 248


def sign_token(payload: dict, secret: str) -> str:
    """Return a compact JWT for payload. In prod, use HSM/RSA."""
    return jwt.encode(payload, secret, algorithm=JWT_ALG)


def verify_token(token: str, secret: str) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALG])
    except JWTError:
        return {}


def hash_value(val: str) -> str:
    return hashlib.sha256(val.encode()).hexdigest()


def field_hash(val: str) -> str:
    """sha256 of val reduced to a field element, as a decimal string."""
    digest = int.from_bytes(hashlib.sha256(val.encode()).digest(), "big")
    return str(digest % (1 << FIELD_BITS))


def pack_ascii(text: str) -> str:
    if not text:
        return "0"
    return str(int.from_bytes(text.encode("ascii"), "big"))


def unpack_ascii(signal: str):
    value = int(signal)
    if value == 0:
        return None
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return raw.decode("ascii")
