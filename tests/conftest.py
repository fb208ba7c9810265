"""Shared pytest fixtures for mintctl tests.

Provides an asset directory builder, an in-memory ledger that executes the
candy machine instructions against the real account layout, a scriptable
storage backend, and a factory for fully wired reconciliation loops.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import json
import struct
from collections import defaultdict
from pathlib import Path

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from mintctl.assets import discover_items
from mintctl.cache import CacheStore
from mintctl.constants import CONFIG_ARRAY_START, CONFIG_LINE_SIZE, MAX_NAME_LENGTH, MAX_URI_LENGTH
from mintctl.exceptions import LedgerTransientError
from mintctl.ledger.client import Ledger
from mintctl.ledger.layout import (
    CandyMachineState,
    account_discriminator,
    config_line_count,
    decode_candy_machine,
    i64,
    instruction_discriminator,
    option,
    string,
    u8,
    u32,
    u64,
)
from mintctl.ledger.program import CandyMachineProgram
from mintctl.ledger.submitter import TransactionSubmitter
from mintctl.models import UploadConfig
from mintctl.reconcile import ReconciliationLoop
from mintctl.upload.scheduler import BatchScheduler
from mintctl.upload.storage import StorageBackend

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16

_INSTRUCTION_NAMES = {
    instruction_discriminator(name): name
    for name in (
        "initialize_config",
        "add_config_lines",
        "initialize_candy_machine",
        "update_candy_machine",
        "mint_nft",
        "withdraw_funds",
    )
}


# ======================================================================
# Asset directories
# ======================================================================


def write_assets(directory: Path, count: int, creator: Pubkey | None = None) -> Path:
    """Write ``count`` png/json pairs into *directory*."""
    directory.mkdir(parents=True, exist_ok=True)
    creator = creator or Keypair().pubkey()
    for i in range(count):
        (directory / f"{i}.png").write_bytes(PNG_BYTES + bytes([i % 256]))
        manifest = {
            "name": f"Item #{i}",
            "symbol": "TEST",
            "seller_fee_basis_points": 500,
            "image": "image.png",
            "properties": {
                "files": [{"uri": "image.png", "type": "image/png"}],
                "creators": [{"address": str(creator), "share": 100}],
            },
        }
        (directory / f"{i}.json").write_text(json.dumps(manifest))
    return directory


@pytest.fixture
def asset_dir(tmp_path: Path) -> Path:
    """Asset directory with three items (0..2)."""
    return write_assets(tmp_path / "assets", 3)


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


# ======================================================================
# Fake storage
# ======================================================================


class FakeStorage(StorageBackend):
    """Storage backend returning deterministic links.

    ``failures[index]`` is a list of exceptions raised, in order, on the
    first calls for that index before it succeeds.  ``delays[index]``
    overrides the shared ``delay`` for one item, so completion order can
    differ from index order.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.failures: dict[int, list[Exception]] = defaultdict(list)
        self.calls: dict[int, int] = defaultdict(int)
        self.delay = delay
        self.delays: dict[int, float] = {}
        self.completed: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload(self, image: bytes, manifest: bytes, *, index: int) -> str:
        self.calls[index] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(index, self.delay)
            if delay:
                await asyncio.sleep(delay)
            if self.failures[index]:
                raise self.failures[index].pop(0)
            self.completed.append(index)
            return f"https://arweave.net/link-{index}"
        finally:
            self.in_flight -= 1

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


# ======================================================================
# Fake ledger
# ======================================================================


def encode_candy_machine(state: CandyMachineState) -> bytes:
    return (
        account_discriminator("CandyMachine")
        + bytes(state.authority)
        + bytes(state.wallet)
        + option(state.token_mint, bytes)
        + bytes(state.config)
        + string(state.uuid)
        + u64(state.price)
        + u64(state.items_available)
        + option(state.go_live_date, i64)
        + u64(state.items_redeemed)
        + u8(state.bump)
    )


class _Args:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def read(self, fmt: str) -> int:
        value = struct.unpack_from(fmt, self.data, self.offset)[0]
        self.offset += struct.calcsize(fmt)
        return value

    def string(self) -> str:
        size = self.read("<I")
        value = self.data[self.offset : self.offset + size].decode()
        self.offset += size
        return value

    def option(self, fmt: str) -> int | None:
        return self.read(fmt) if self.read("<B") else None


class FakeLedger(Ledger):
    """In-memory ledger executing candy machine instructions.

    Fault injection:
        ``send_errors`` -- exceptions raised by the next ``send`` calls
            (before the transaction is applied).
        ``lost_confirmations`` -- number of upcoming ``confirm`` calls that
            time out even though the transaction landed.
        ``reject`` -- instruction name -> exception raised when sent.
    """

    def __init__(self, program: CandyMachineProgram | None = None) -> None:
        self.program = program or CandyMachineProgram()
        self.accounts: dict[Pubkey, bytes] = {}
        self.balances: dict[Pubkey, int] = defaultdict(int)
        self.landed: set[str] = set()
        self.sent: list[list[str]] = []
        self.send_errors: list[Exception] = []
        self.lost_confirmations = 0
        self.reject: dict[str, Exception] = {}
        self.closed = False
        self._counter = itertools.count(1)

    # Reads --------------------------------------------------------------

    async def get_account_data(self, address: Pubkey) -> bytes | None:
        return self.accounts.get(address)

    async def get_balance(self, address: Pubkey) -> int:
        return self.balances[address]

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return size * 10

    # Writes -------------------------------------------------------------

    async def send(self, instructions, signers) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        names = [self._name(ix) for ix in instructions]
        for name in names:
            if name in self.reject:
                raise self.reject[name]
        for ix in instructions:
            self._apply(ix)
        self.sent.append(names)
        signature = f"sig-{next(self._counter)}"
        self.landed.add(signature)
        return signature

    async def confirm(self, signature: str, timeout: float) -> None:
        if self.lost_confirmations:
            self.lost_confirmations -= 1
            raise LedgerTransientError(f"transaction {signature} not confirmed")

    async def signature_landed(self, signature: str) -> bool:
        return signature in self.landed

    async def close(self) -> None:
        self.closed = True

    # Helpers ------------------------------------------------------------

    def config_lines(self, config: Pubkey) -> list[tuple[str, str]]:
        data = self.accounts[config]
        lines = []
        for i in range(config_line_count(data)):
            offset = CONFIG_ARRAY_START + 4 + i * CONFIG_LINE_SIZE
            name = data[offset + 4 : offset + 4 + MAX_NAME_LENGTH].rstrip(b"\x00").decode()
            uri_offset = offset + 4 + MAX_NAME_LENGTH + 4
            uri = data[uri_offset : uri_offset + MAX_URI_LENGTH].rstrip(b"\x00").decode()
            lines.append((name, uri))
        return lines

    def count(self, name: str) -> int:
        return sum(names.count(name) for names in self.sent)

    def _name(self, ix) -> str:
        if ix.program_id == SYSTEM_PROGRAM_ID:
            return {0: "create_account", 2: "transfer"}.get(
                struct.unpack_from("<I", bytes(ix.data))[0], "system"
            )
        if ix.program_id == self.program.program_id:
            return _INSTRUCTION_NAMES[bytes(ix.data)[:8]]
        return "other"

    def _apply(self, ix) -> None:
        name = self._name(ix)
        data = bytes(ix.data)
        keys = [meta.pubkey for meta in ix.accounts]

        if name == "create_account":
            lamports, space = struct.unpack_from("<QQ", data, 4)
            self.accounts[keys[1]] = bytes(space)
            self.balances[keys[1]] += lamports
        elif name == "transfer":
            lamports = struct.unpack_from("<Q", data, 4)[0]
            self.balances[keys[0]] -= lamports
            self.balances[keys[1]] += lamports
        elif name == "initialize_config":
            header = account_discriminator("Config") + bytes(keys[1]) + data[8:]
            account = bytearray(self.accounts[keys[0]])
            account[: len(header)] = header
            self.accounts[keys[0]] = bytes(account)
        elif name == "add_config_lines":
            self._add_lines(keys[0], _Args(data[8:]))
        elif name == "initialize_candy_machine":
            args = _Args(data[8:])
            bump = args.read("<B")
            self.accounts[keys[0]] = encode_candy_machine(
                CandyMachineState(
                    authority=keys[3],
                    wallet=keys[1],
                    token_mint=keys[7] if len(keys) > 7 else None,
                    config=keys[2],
                    uuid=args.string(),
                    price=args.read("<Q"),
                    items_available=args.read("<Q"),
                    go_live_date=args.option("<q"),
                    items_redeemed=0,
                    bump=bump,
                )
            )
        elif name == "update_candy_machine":
            args = _Args(data[8:])
            state = decode_candy_machine(self.accounts[keys[0]])
            price = args.option("<Q")
            go_live = args.option("<q")
            self.accounts[keys[0]] = encode_candy_machine(
                dataclasses.replace(
                    state,
                    price=state.price if price is None else price,
                    go_live_date=state.go_live_date if go_live is None else go_live,
                )
            )
        elif name == "mint_nft":
            state = decode_candy_machine(self.accounts[keys[1]])
            self.accounts[keys[1]] = encode_candy_machine(
                dataclasses.replace(state, items_redeemed=state.items_redeemed + 1)
            )
        elif name == "withdraw_funds":
            self.balances[keys[1]] += self.balances.pop(keys[0], 0)
            del self.accounts[keys[0]]

    def _add_lines(self, config: Pubkey, args: _Args) -> None:
        index = args.read("<I")
        count = args.read("<I")
        account = bytearray(self.accounts[config])
        for i in range(index, index + count):
            name = args.string().encode()
            uri = args.string().encode()
            offset = CONFIG_ARRAY_START + 4 + i * CONFIG_LINE_SIZE
            line = (
                u32(len(name))
                + name.ljust(MAX_NAME_LENGTH, b"\x00")
                + u32(len(uri))
                + uri.ljust(MAX_URI_LENGTH, b"\x00")
            )
            account[offset : offset + CONFIG_LINE_SIZE] = line
        current = struct.unpack_from("<I", account, CONFIG_ARRAY_START)[0]
        account[CONFIG_ARRAY_START : CONFIG_ARRAY_START + 4] = u32(max(current, index + count))
        self.accounts[config] = bytes(account)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


# ======================================================================
# Wired components
# ======================================================================


@pytest.fixture
def fast_config() -> UploadConfig:
    """Upload config with no backoff so retry tests run instantly."""
    return UploadConfig(
        chunk_size=50,
        upload_backoff_seconds=0,
        ledger_backoff_seconds=0,
        upload_timeout_seconds=5,
        confirm_timeout_seconds=1,
    )


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / ".cache")


@pytest.fixture
def make_loop(store, storage, ledger, payer, fast_config):
    """Factory building a :class:`ReconciliationLoop` over the shared fakes."""

    def _make(config: UploadConfig | None = None) -> ReconciliationLoop:
        config = config or fast_config
        return ReconciliationLoop(
            store=store,
            cache_name="temp",
            env="devnet",
            scheduler=BatchScheduler(storage, config),
            program=ledger.program,
            submitter=TransactionSubmitter(ledger, config),
            ledger=ledger,
            payer=payer,
            config=config,
        )

    return _make


@pytest.fixture
def assets(asset_dir: Path):
    return discover_items(asset_dir)

