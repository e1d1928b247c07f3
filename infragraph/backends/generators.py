"""
Local generators for passwords and name suffixes.
"""
import secrets
import string
from typing import Any, Dict

from infragraph.backends.base import Backend
from infragraph.errors import ExternalApiError

_SPECIAL = "!@#$%&*()-_=+[]{}<>:?"


def _alphabet(spec: Dict[str, Any]) -> str:
    chars = ""
    if spec.get("lower", True):
        chars += string.ascii_lowercase
    if spec.get("upper", True):
        chars += string.ascii_uppercase
    if spec.get("number", True):
        chars += string.digits
    if spec.get("special", True):
        chars += _SPECIAL
    return chars


class RandomBackend(Backend):
    name = "random"

    def create(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        if kind not in ("random.RandomPassword", "random.RandomString"):
            raise ExternalApiError(400, f"unsupported resource type {kind}")
        length = spec.get("length")
        if not isinstance(length, int) or length < 1:
            raise ExternalApiError(400, f"{kind}:{name}: length must be a positive integer")
        alphabet = _alphabet(spec)
        if not alphabet:
            raise ExternalApiError(400, f"{kind}:{name}: every character class is disabled")
        result = "".join(secrets.choice(alphabet) for _ in range(length))
        return {"length": length, "result": result}
