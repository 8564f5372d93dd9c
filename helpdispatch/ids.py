"""ID generation for queue envelopes.

Database rows use integer primary keys; only broker-side objects get
random string identifiers.
"""

from nanoid import generate

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
ID_LENGTH = 12


def gen_id(prefix: str) -> str:
    return f"{prefix}{generate(ALPHABET, ID_LENGTH)}"


def message_id() -> str:
    return gen_id("msg_")


def consumer_tag() -> str:
    return gen_id("ct_")
