"""Lifecycle operations on a registered candy machine.

All operations read the cache written by ``mintctl upload`` and act on the
config account and candy machine it records:

* :meth:`CandyMachineOperator.create` -- initialize the candy machine once
  every item is registered
* :meth:`CandyMachineOperator.update` -- change price and/or go-live date
* :meth:`CandyMachineOperator.mint_one_token` -- redeem one item
* :meth:`CandyMachineOperator.withdraw` -- reclaim the config account's rent
* :meth:`CandyMachineOperator.sweep_withdraw` -- withdraw from every config
  in a key list above a balance threshold
* :meth:`CandyMachineOperator.show` -- read back on-chain state
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mintctl.cache import CacheDocument, CacheStore
from mintctl.constants import LAMPORTS_PER_SOL, MINT_ACCOUNT_SIZE
from mintctl.exceptions import ConfigurationError, LedgerError
from mintctl.ledger.client import Ledger
from mintctl.ledger.layout import (
    CandyMachineData,
    CandyMachineState,
    decode_candy_machine,
    decode_config_header,
    decode_config_lines,
    decode_mint_decimals,
    decode_token_account_mint,
)
from mintctl.ledger.program import CandyMachineProgram
from mintctl.ledger.submitter import TransactionSubmitter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def parse_price(price: str | float, multiplier: int = LAMPORTS_PER_SOL) -> int:
    """Convert a decimal *price* (e.g. ``"1.5"`` SOL) to base units.

    Raises:
        ConfigurationError: If *price* is not a non-negative number.
    """
    try:
        value = Decimal(str(price))
    except InvalidOperation:
        raise ConfigurationError(f"Invalid price: {price!r}") from None
    if not value.is_finite() or value < 0:
        raise ConfigurationError(f"Invalid price: {price!r}")
    return int(value * multiplier)


def parse_date(value: str | None) -> int | None:
    """Parse a go-live date into unix seconds.

    Accepts ``"now"`` or an ISO-8601 timestamp; naive timestamps are UTC.

    Raises:
        ConfigurationError: If *value* cannot be parsed.
    """
    if value is None:
        return None
    if value.strip().lower() == "now":
        return int(time.time())
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ConfigurationError(
            f"Invalid date {value!r}; use 'now' or ISO-8601 (e.g. 2026-12-01T18:00:00Z)"
        ) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class SweepReport:
    """Outcome of a sweep withdraw over a key list."""

    scanned: int = 0
    withdrawn: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    donated: int = 0

    @property
    def total_lamports(self) -> int:
        return sum(self.withdrawn.values())


@dataclass
class MachineInfo:
    """On-chain view of one deployment, for ``mintctl show``."""

    config: str
    uuid: str | None
    authority: str | None
    lines_registered: int
    items_cached: int
    candy_machine: CandyMachineState | None = None
    candy_machine_address: str | None = None


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------


class CandyMachineOperator:
    """Runs lifecycle operations for one ``(cache name, env)`` pair.

    Usage::

        operator = CandyMachineOperator(
            store=store, cache_name="temp", env="devnet", program=program,
            submitter=submitter, ledger=ledger, payer=payer,
        )
        address = await operator.create("1.5")
    """

    def __init__(
        self,
        *,
        store: CacheStore,
        cache_name: str,
        env: str,
        program: CandyMachineProgram,
        submitter: TransactionSubmitter,
        ledger: Ledger,
        payer: Keypair,
    ) -> None:
        self._store = store
        self._cache_name = cache_name
        self._env = env
        self._program = program
        self._submitter = submitter
        self._ledger = ledger
        self._payer = payer

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(
        self,
        price: str | float,
        *,
        spl_token: str | None = None,
        spl_token_account: str | None = None,
        sol_treasury_account: str | None = None,
        go_live: str | None = None,
    ) -> str:
        """Initialize the candy machine and record its address.

        Requires every cached item to be registered.  Runs at most once per
        cache: a recorded address is an error, an address already present on
        chain is adopted without sending anything.

        Returns:
            The candy machine address.

        Raises:
            ConfigurationError: On contradictory treasury options, an
                incomplete upload or an already created machine.
        """
        doc = self._load_registered()
        if doc.program.candy_machine is not None:
            raise ConfigurationError(
                f"Candy machine already created at {doc.program.candy_machine}"
            )

        wallet = self._payer.pubkey()
        token_mint: Pubkey | None = None
        lamports_price = None
        if spl_token or spl_token_account:
            if sol_treasury_account:
                raise ConfigurationError(
                    "If spl-token-account or spl-token is set then "
                    "sol-treasury-account cannot be set"
                )
            if not spl_token:
                raise ConfigurationError(
                    "If spl-token-account is set, spl-token must also be set"
                )
            if not spl_token_account:
                raise ConfigurationError(
                    "If spl-token is set, spl-token-account must also be set"
                )
            token_mint = _parse_pubkey(spl_token, "spl-token")
            wallet = _parse_pubkey(spl_token_account, "spl-token-account")
            decimals = await self._mint_decimals(token_mint)
            await self._check_token_account(wallet, token_mint)
            lamports_price = parse_price(price, 10**decimals)
        elif sol_treasury_account:
            wallet = _parse_pubkey(sol_treasury_account, "sol-treasury-account")

        if lamports_price is None:
            lamports_price = parse_price(price)

        config = Pubkey.from_string(doc.program.config)
        candy_machine, bump = self._program.candy_machine_address(config, doc.program.uuid)

        if await self._ledger.get_account_data(candy_machine) is not None:
            logger.warning("Candy machine %s already exists on chain, recording it", candy_machine)
        else:
            instruction = self._program.initialize_candy_machine(
                candy_machine=candy_machine,
                bump=bump,
                wallet=wallet,
                config=config,
                authority=self._payer.pubkey(),
                payer=self._payer.pubkey(),
                data=CandyMachineData(
                    uuid=doc.program.uuid,
                    price=lamports_price,
                    items_available=len(doc.items),
                    go_live_date=parse_date(go_live),
                ),
                token_mint=token_mint,
            )
            await self._submitter.submit([instruction], [self._payer], "initialize candy machine")

        doc.set_candy_machine(str(candy_machine))
        self._store.save(self._cache_name, self._env, doc)
        logger.info("create_candy_machine finished. candy machine pubkey: %s", candy_machine)
        return str(candy_machine)

    # ------------------------------------------------------------------
    # update / mint
    # ------------------------------------------------------------------

    async def update(self, price: str | float | None = None, go_live: str | None = None) -> None:
        """Change the price and/or go-live date of the candy machine.

        Raises:
            ConfigurationError: If neither value is given or no candy
                machine has been created.
        """
        if price is None and go_live is None:
            raise ConfigurationError("Nothing to update: pass --price and/or --go-live")
        address, state = await self._load_machine()

        new_price = None
        if price is not None:
            multiplier = LAMPORTS_PER_SOL
            if state.token_mint is not None:
                multiplier = 10 ** await self._mint_decimals(state.token_mint)
            new_price = parse_price(price, multiplier)

        instruction = self._program.update_candy_machine(
            candy_machine=address,
            authority=self._payer.pubkey(),
            price=new_price,
            go_live_date=parse_date(go_live),
        )
        await self._submitter.submit([instruction], [self._payer], "update candy machine")
        logger.info("update_candy_machine finished for %s", address)

    async def mint_one_token(self) -> str:
        """Mint one token from the candy machine into the payer's wallet.

        Returns:
            The new token's mint address.
        """
        address, state = await self._load_machine()
        if state.sold_out:
            raise ConfigurationError(
                f"Candy machine {address} is sold out "
                f"({state.items_redeemed}/{state.items_available})"
            )

        mint = Keypair()
        rent = await self._ledger.minimum_balance_for_rent_exemption(MINT_ACCOUNT_SIZE)
        instructions = self._program.mint_nft(
            config=state.config,
            candy_machine=address,
            payer=self._payer.pubkey(),
            wallet=state.wallet,
            mint=mint.pubkey(),
            mint_rent=rent,
            token_mint=state.token_mint,
        )
        await self._submitter.submit(instructions, [self._payer, mint], "mint token")
        logger.info("Minted token %s from %s", mint.pubkey(), address)
        return str(mint.pubkey())

    # ------------------------------------------------------------------
    # withdraw
    # ------------------------------------------------------------------

    async def withdraw(
        self,
        dry: bool = False,
        *,
        charity: str | None = None,
        charity_percent: int = 0,
    ) -> int:
        """Withdraw the config account's lamports to the payer.

        With *charity* set, *charity_percent* of the amount is forwarded to
        it in the same transaction.

        Returns:
            The withdrawable (or withdrawn) amount in lamports.
        """
        charity_key = self._charity(charity, charity_percent)
        doc = self._store.load(self._cache_name, self._env)
        if doc.program.config is None:
            raise ConfigurationError("Cache has no config account; run 'mintctl upload' first")
        config = Pubkey.from_string(doc.program.config)
        balance = await self._ledger.get_balance(config)
        if dry:
            logger.info("Config %s holds %d lamports (dry run)", config, balance)
            return balance
        await self._submitter.submit(
            self._withdraw_instructions(config, balance, charity_key, charity_percent),
            [self._payer],
            f"withdraw {config}",
        )
        logger.info("Withdrew %d lamports from %s", balance, config)
        return balance

    async def sweep_withdraw(
        self,
        key_list: Path,
        *,
        min_balance: int,
        charity: str | None = None,
        charity_percent: int = 0,
        dry: bool = False,
    ) -> SweepReport:
        """Withdraw from every config in *key_list* holding more than *min_balance*.

        *key_list* is the JSON output of ``getProgramAccounts`` for the
        candy machine program.  Only configs whose authority is the payer are
        touched; a failure on one config is logged and the sweep continues.
        With *charity* set, *charity_percent* of each withdrawal is
        forwarded to it in the same transaction.

        Raises:
            ConfigurationError: On an unreadable key list or a percentage
                outside 0..100.
        """
        charity_key = self._charity(charity, charity_percent)
        entries = _read_key_list(key_list)
        payer = self._payer.pubkey()
        report = SweepReport()

        for entry in entries:
            report.scanned += 1
            address = entry["pubkey"]
            lamports = entry["lamports"]
            if lamports <= min_balance:
                report.skipped[address] = f"balance {lamports} <= {min_balance}"
                continue
            try:
                config = Pubkey.from_string(address)
                data = await self._ledger.get_account_data(config)
                if data is None:
                    report.skipped[address] = "account no longer exists"
                    continue
                header = decode_config_header(data)
                if header.authority != payer:
                    report.skipped[address] = f"authority is {header.authority}"
                    continue
                if dry:
                    report.withdrawn[address] = lamports
                    continue

                await self._submitter.submit(
                    self._withdraw_instructions(config, lamports, charity_key, charity_percent),
                    [self._payer],
                    f"withdraw {address}",
                )
                report.withdrawn[address] = lamports
                if charity_key is not None:
                    report.donated += lamports * charity_percent // 100
            except (LedgerError, ValueError) as exc:
                logger.error("Withdraw from %s failed: %s", address, exc)
                report.errors[address] = str(exc)

        logger.info(
            "Sweep finished: %d scanned, %d withdrawn (%d lamports), %d skipped, %d errors",
            report.scanned,
            len(report.withdrawn),
            report.total_lamports,
            len(report.skipped),
            len(report.errors),
        )
        return report

    # ------------------------------------------------------------------
    # show
    # ------------------------------------------------------------------

    async def show(self) -> MachineInfo:
        """Read back the config account and candy machine recorded in the cache."""
        doc = self._store.load(self._cache_name, self._env)
        if doc.program.config is None:
            raise ConfigurationError("Cache has no config account; run 'mintctl upload' first")
        config = Pubkey.from_string(doc.program.config)
        data = await self._ledger.get_account_data(config)
        info = MachineInfo(
            config=str(config),
            uuid=doc.program.uuid,
            authority=None,
            lines_registered=0,
            items_cached=len(doc.items),
        )
        if data is not None:
            info.authority = str(decode_config_header(data).authority)
            info.lines_registered = sum(1 for line in decode_config_lines(data) if line.uri)

        candy_machine, _ = self._program.candy_machine_address(config, doc.program.uuid)
        machine_data = await self._ledger.get_account_data(candy_machine)
        if machine_data is not None:
            info.candy_machine = decode_candy_machine(machine_data)
            info.candy_machine_address = str(candy_machine)
        return info

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _charity(charity: str | None, charity_percent: int) -> Pubkey | None:
        if not 0 <= charity_percent <= 100:
            raise ConfigurationError("Charity percentage needs to be between 0 and 100")
        return _parse_pubkey(charity, "charity") if charity else None

    def _withdraw_instructions(
        self, config: Pubkey, lamports: int, charity: Pubkey | None, charity_percent: int
    ) -> list:
        payer = self._payer.pubkey()
        instructions = [self._program.withdraw_funds(config, payer)]
        donation = lamports * charity_percent // 100 if charity is not None else 0
        if donation:
            instructions.append(self._program.transfer(payer, charity, donation))
        return instructions

    def _load_registered(self) -> CacheDocument:
        doc = self._store.load(self._cache_name, self._env)
        if doc.program.config is None or doc.program.uuid is None:
            raise ConfigurationError("Cache has no config account; run 'mintctl upload' first")
        if not doc.is_fully_on_chain:
            pending = [i for i in doc.indexes() if not doc.get(i).on_chain]
            raise ConfigurationError(
                f"{len(pending)} item(s) are not registered on chain yet "
                f"(first: {pending[:5]}); rerun 'mintctl upload' or 'mintctl verify'"
            )
        return doc

    async def _load_machine(self) -> tuple[Pubkey, CandyMachineState]:
        doc = self._store.load(self._cache_name, self._env)
        if doc.program.candy_machine is None:
            raise ConfigurationError("No candy machine in cache; run 'mintctl create' first")
        address = Pubkey.from_string(doc.program.candy_machine)
        data = await self._ledger.get_account_data(address)
        if data is None:
            raise ConfigurationError(f"Candy machine {address} does not exist on {self._env}")
        return address, decode_candy_machine(data)

    async def _mint_decimals(self, mint: Pubkey) -> int:
        data = await self._ledger.get_account_data(mint)
        if data is None:
            raise ConfigurationError(f"The specified spl-token {mint} does not exist")
        try:
            return decode_mint_decimals(data)
        except ValueError:
            raise ConfigurationError("The specified spl-token is not initialized") from None

    async def _check_token_account(self, account: Pubkey, mint: Pubkey) -> None:
        data = await self._ledger.get_account_data(account)
        if data is None:
            raise ConfigurationError(f"The specified spl-token-account {account} does not exist")
        try:
            account_mint = decode_token_account_mint(data)
        except ValueError:
            raise ConfigurationError(
                "The specified spl-token-account is not initialized"
            ) from None
        if account_mint != mint:
            raise ConfigurationError(
                f"The spl-token-account's mint ({account_mint}) does not match "
                f"specified spl-token {mint}"
            )


def _parse_pubkey(value: str, option: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError:
        raise ConfigurationError(f"--{option}: {value!r} is not a valid address") from None


def _read_key_list(path: Path) -> list[dict]:
    """Read ``getProgramAccounts`` output as ``[{"pubkey", "lamports"}]``.

    Accepts both the raw RPC response (``{"result": [...]}``) and the bare
    result list.
    """
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read key list {path}: {exc}") from exc
    if isinstance(raw, dict):
        raw = raw.get("result", [])
    try:
        return [
            {"pubkey": entry["pubkey"], "lamports": int(entry["account"]["lamports"])}
            for entry in raw
        ]
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Key list {path} is not getProgramAccounts output: {exc}") from exc
