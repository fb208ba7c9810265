"""Binary layout of the candy machine program's instructions and accounts.

Instructions are Anchor-style: an 8-byte discriminator
(``sha256("global:<name>")[:8]``) followed by Borsh-encoded arguments.
Accounts start with ``sha256("account:<Name>")[:8]``.

The config account stores a fixed header, then a little-endian ``u32``
count of committed lines at :data:`CONFIG_ARRAY_START`, then one
fixed-size line per item::

    [u32 len][name padded to 32 bytes][u32 len][uri padded to 200 bytes]
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from mintctl.constants import (
    CONFIG_ARRAY_START,
    CONFIG_LINE_SIZE,
    MAX_NAME_LENGTH,
    MAX_URI_LENGTH,
)


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


# ---------------------------------------------------------------------------
# Borsh encoding
# ---------------------------------------------------------------------------


def u8(value: int) -> bytes:
    return struct.pack("<B", value)


def u16(value: int) -> bytes:
    return struct.pack("<H", value)


def u32(value: int) -> bytes:
    return struct.pack("<I", value)


def u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def i64(value: int) -> bytes:
    return struct.pack("<q", value)


def boolean(value: bool) -> bytes:
    return b"\x01" if value else b"\x00"


def string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return u32(len(raw)) + raw


def option(value: object, encode) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + encode(value)


def vec(values: list, encode) -> bytes:
    return u32(len(values)) + b"".join(encode(v) for v in values)


# ---------------------------------------------------------------------------
# Program data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigLine:
    """One registered item: display name and metadata link."""

    name: str
    uri: str

    def encode(self) -> bytes:
        return string(self.name) + string(self.uri)


@dataclass(frozen=True)
class Creator:
    address: Pubkey
    verified: bool
    share: int

    def encode(self) -> bytes:
        return bytes(self.address) + boolean(self.verified) + u8(self.share)


@dataclass(frozen=True)
class ConfigData:
    """Arguments of ``initialize_config``."""

    uuid: str
    symbol: str
    seller_fee_basis_points: int
    creators: tuple[Creator, ...]
    max_supply: int
    is_mutable: bool
    retain_authority: bool
    max_number_of_lines: int

    def encode(self) -> bytes:
        return (
            string(self.uuid)
            + string(self.symbol)
            + u16(self.seller_fee_basis_points)
            + vec(list(self.creators), Creator.encode)
            + u64(self.max_supply)
            + boolean(self.is_mutable)
            + boolean(self.retain_authority)
            + u32(self.max_number_of_lines)
        )


@dataclass(frozen=True)
class CandyMachineData:
    """Arguments of ``initialize_candy_machine``."""

    uuid: str
    price: int
    items_available: int
    go_live_date: int | None

    def encode(self) -> bytes:
        return (
            string(self.uuid)
            + u64(self.price)
            + u64(self.items_available)
            + option(self.go_live_date, i64)
        )


def config_account_size(max_number_of_lines: int) -> int:
    """Bytes to allocate for a config account holding *max_number_of_lines*."""
    return (
        CONFIG_ARRAY_START
        + 4
        + max_number_of_lines * CONFIG_LINE_SIZE
        + 4
        + (max_number_of_lines + 7) // 8
    )


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class _Reader:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self.offset = offset

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self._data):
            raise ValueError(f"account data truncated at byte {self.offset}")
        chunk = self._data[self.offset : end]
        self.offset = end
        return chunk

    def unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    def u8(self) -> int:
        return self.unpack("<B")

    def u32(self) -> int:
        return self.unpack("<I")

    def u64(self) -> int:
        return self.unpack("<Q")

    def i64(self) -> int:
        return self.unpack("<q")

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(32))

    def string(self) -> str:
        return self.take(self.u32()).rstrip(b"\x00").decode("utf-8", errors="replace")

    def option(self, read):
        return read() if self.u8() else None


@dataclass(frozen=True)
class ConfigHeader:
    authority: Pubkey
    uuid: str
    symbol: str


def decode_config_header(data: bytes) -> ConfigHeader:
    reader = _Reader(data, 8)
    authority = reader.pubkey()
    uuid = reader.string()
    symbol = reader.string()
    return ConfigHeader(authority=authority, uuid=uuid, symbol=symbol)


def config_line_count(data: bytes) -> int:
    return _Reader(data, CONFIG_ARRAY_START).u32()


def decode_config_lines(data: bytes) -> list[ConfigLine]:
    """Decode every committed line of a config account.

    Unwritten slots below the count decode as empty lines.
    """
    lines: list[ConfigLine] = []
    for i in range(config_line_count(data)):
        reader = _Reader(data, CONFIG_ARRAY_START + 4 + i * CONFIG_LINE_SIZE)
        name = reader.take(4 + MAX_NAME_LENGTH)[4:]
        uri = reader.take(4 + MAX_URI_LENGTH)[4:]
        lines.append(
            ConfigLine(
                name=name.rstrip(b"\x00").decode("utf-8", errors="replace"),
                uri=uri.rstrip(b"\x00").decode("utf-8", errors="replace"),
            )
        )
    return lines


@dataclass(frozen=True)
class CandyMachineState:
    """Decoded candy machine account."""

    authority: Pubkey
    wallet: Pubkey
    token_mint: Pubkey | None
    config: Pubkey
    uuid: str
    price: int
    items_available: int
    go_live_date: int | None
    items_redeemed: int
    bump: int

    @property
    def sold_out(self) -> bool:
        return self.items_redeemed >= self.items_available


def decode_candy_machine(data: bytes) -> CandyMachineState:
    reader = _Reader(data, 8)
    authority = reader.pubkey()
    wallet = reader.pubkey()
    token_mint = reader.option(reader.pubkey)
    config = reader.pubkey()
    uuid = reader.string()
    price = reader.u64()
    items_available = reader.u64()
    go_live_date = reader.option(reader.i64)
    items_redeemed = reader.u64()
    bump = reader.u8()
    return CandyMachineState(
        authority=authority,
        wallet=wallet,
        token_mint=token_mint,
        config=config,
        uuid=uuid,
        price=price,
        items_available=items_available,
        go_live_date=go_live_date,
        items_redeemed=items_redeemed,
        bump=bump,
    )


def decode_mint_decimals(data: bytes) -> int:
    """Return the decimals of an SPL token mint account.

    Raises:
        ValueError: If the mint is not initialized.
    """
    # COption<Pubkey> authority (36) + u64 supply (8) + u8 decimals + bool initialized
    reader = _Reader(data, 44)
    decimals = reader.u8()
    if not reader.u8():
        raise ValueError("mint account is not initialized")
    return decimals


def decode_token_account_mint(data: bytes) -> Pubkey:
    """Return the mint of an SPL token account.

    Raises:
        ValueError: If the token account is not initialized.
    """
    # mint (32) + owner (32) + amount (8) + COption<Pubkey> delegate (36) + u8 state
    reader = _Reader(data)
    mint = reader.pubkey()
    reader.take(32 + 8 + 36)
    if not reader.u8():
        raise ValueError("token account is not initialized")
    return mint
