"""Intent previewer: decode the contract's read-only preview into named fields."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from .chain import ChainClient, parse_uint_text
from .config import RuntimeConfig, is_hex_address
from .errors import ChainError, ChainTimeout, PreviewError

FieldValue = Union[int, str, bool]


@dataclass(frozen=True)
class PreviewResult:
    action: str
    amount: int
    token: str
    fields: dict[str, FieldValue] = field(default_factory=dict)
    native_token: str = ""

    @property
    def is_native(self) -> bool:
        return bool(self.native_token) and self.token.lower() == self.native_token.lower()

    def as_json_dict(self) -> dict[str, str | bool]:
        # Amounts are uint256 so they are serialized as decimal strings.
        return {name: (value if isinstance(value, bool) else str(value)) for name, value in self.fields.items()}


def _split_top_level(types_text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current = ""
    for ch in types_text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


def return_types(signature: str) -> list[str]:
    """Return the output ABI types of a cast-style `name(inputs)(outputs)` signature."""
    open_idx = signature.find("(")
    if open_idx <= 0:
        raise PreviewError(f"Preview signature '{signature}' is malformed.")
    depth = 0
    close_idx = -1
    for idx in range(open_idx, len(signature)):
        if signature[idx] == "(":
            depth += 1
        elif signature[idx] == ")":
            depth -= 1
            if depth == 0:
                close_idx = idx
                break
    rest = signature[close_idx + 1 :].strip() if close_idx != -1 else ""
    if not (rest.startswith("(") and rest.endswith(")")):
        raise PreviewError(f"Preview signature '{signature}' does not declare return types.")
    return _split_top_level(rest[1:-1])


def decode_value(abi_type: str, raw: str) -> FieldValue:
    text = raw.strip()
    if re.fullmatch(r"uint[0-9]*", abi_type):
        return parse_uint_text(text)
    if re.fullmatch(r"int[0-9]*", abi_type):
        negative = text.startswith("-")
        magnitude = parse_uint_text(text[1:] if negative else text)
        return -magnitude if negative else magnitude
    if abi_type == "address":
        if not is_hex_address(text):
            raise ChainError(f"Expected an address, got '{raw}'.")
        return text
    if abi_type == "bool":
        if text not in {"true", "false"}:
            raise ChainError(f"Expected a bool, got '{raw}'.")
        return text == "true"
    if re.fullmatch(r"bytes[0-9]*", abi_type):
        if not re.fullmatch(r"0x[a-fA-F0-9]*", text):
            raise ChainError(f"Expected hex bytes, got '{raw}'.")
        return text
    if abi_type == "string":
        if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
            return text[1:-1]
        return text
    return text


class IntentPreviewer:
    def __init__(self, chain: ChainClient, config: RuntimeConfig):
        self._chain = chain
        self._config = config
        self._types = return_types(config.preview_signature)
        if len(self._types) != len(config.preview_fields):
            raise PreviewError(
                f"Preview layout declares {len(config.preview_fields)} fields but the signature returns {len(self._types)} values."
            )

    def decode(self, values: list[str]) -> PreviewResult:
        names = self._config.preview_fields
        if len(values) != len(names):
            raise PreviewError(f"Preview returned {len(values)} values, expected {len(names)}.", details={"values": values})
        try:
            decoded = {name: decode_value(abi_type, raw) for name, abi_type, raw in zip(names, self._types, values)}
        except ChainError as exc:
            raise PreviewError(f"Preview response is malformed: {exc}") from exc

        amount = decoded.get("amount")
        token = decoded.get("token")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise PreviewError("Preview amount is not an unsigned integer.")
        if not isinstance(token, str) or not is_hex_address(token):
            raise PreviewError("Preview token is not an address.")
        return PreviewResult(
            action=str(decoded.get("action", "")),
            amount=amount,
            token=token,
            fields=decoded,
            native_token=self._config.native_token,
        )

    async def preview(self, signer_address: str, intent: str) -> PreviewResult:
        try:
            values = await self._chain.call(
                self._config.contract_address,
                self._config.preview_signature,
                [intent],
                sender=signer_address,
            )
        except ChainTimeout as exc:
            raise PreviewError("Timed out waiting for the preview call.", details={"timeoutSec": exc.timeout_sec}) from exc
        except ChainError as exc:
            raise PreviewError(f"Preview call failed: {exc}") from exc
        return self.decode(values)
