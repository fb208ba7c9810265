"""Reconciliation loop: drive the cache toward "every item uploaded and registered".

One call to :meth:`ReconciliationLoop.run_pass` is one bounded pass:

1. **Scanning** -- diff the asset set against the cache and, when
   ``verify_on_chain`` is set, against the config account's lines.  The
   chain wins: cache entries that disagree with it are corrected.
2. **Working** -- create the config account if the cache has none, register
   uploaded-but-unregistered lines, then upload missing items chunk by chunk,
   saving the cache and registering after every chunk.
3. **Scanning** again -- the pass ends in ``done`` or stays ``scanning``
   (incomplete; the caller runs another pass).

Registration only writes the contiguous run of uploaded items that starts at
the lowest unregistered index, so config slot order always matches item
index order.  The cache is saved after each chunk and after each confirmed
transaction; a :class:`~mintctl.exceptions.LedgerFatalError` aborts the pass
with everything achieved so far persisted.
"""

from __future__ import annotations

import logging
from typing import Any

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from statemachine import State, StateMachine

from mintctl.assets import AssetSet, load_manifest
from mintctl.cache import CacheDocument, CacheStore
from mintctl.constants import MAX_CREATOR_LIMIT, MAX_SYMBOL_LENGTH
from mintctl.exceptions import ConfigurationError
from mintctl.ledger.client import Ledger
from mintctl.ledger.layout import (
    ConfigData,
    ConfigLine,
    Creator,
    config_account_size,
    decode_config_lines,
)
from mintctl.ledger.program import CandyMachineProgram
from mintctl.ledger.submitter import TransactionSubmitter
from mintctl.models import PassReport, UploadConfig
from mintctl.upload.scheduler import BatchScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Chain verification
# ---------------------------------------------------------------------------


async def fetch_config_lines(ledger: Ledger, doc: CacheDocument, env: str) -> list[ConfigLine]:
    """Read the committed lines of the config account recorded in *doc*.

    Raises:
        ConfigurationError: If the account does not exist on chain.
    """
    address = Pubkey.from_string(doc.program.config)
    data = await ledger.get_account_data(address)
    if data is None:
        raise ConfigurationError(
            f"Config account {address} recorded in the cache does not exist on {env}"
        )
    return decode_config_lines(data)


def correct_from_chain(
    doc: CacheDocument, lines: list[ConfigLine], indexes: list[int]
) -> list[int]:
    """Make the cache agree with the on-chain *lines* for *indexes*.

    Returns:
        The indexes whose cache entry was changed.
    """
    corrected: list[int] = []
    for index in indexes:
        line = lines[index] if index < len(lines) else None
        entry = doc.get(index)

        if line is not None and line.uri:
            if entry is None or not entry.link:
                logger.warning("Item %d: adopting on-chain link %s", index, line.uri)
                doc.record_upload(index, line.uri, line.name)
                doc.mark_on_chain(index)
            elif entry.link == line.uri and not entry.on_chain:
                logger.warning("Item %d: found on chain, marking registered", index)
                entry.on_chain = True
            elif entry.link != line.uri and entry.on_chain:
                logger.warning(
                    "Item %d: on-chain link %s differs from cache, re-registering",
                    index,
                    line.uri,
                )
                entry.on_chain = False
            else:
                continue
        elif entry is not None and entry.on_chain:
            logger.warning("Item %d: marked on chain but slot is empty", index)
            entry.on_chain = False
        else:
            continue
        corrected.append(index)
    return corrected


async def verify_cache(
    store: CacheStore, cache_name: str, env: str, ledger: Ledger
) -> tuple[CacheDocument, list[int]]:
    """Re-derive every cached item's on-chain status and save corrections.

    Returns:
        The corrected document and the indexes that changed.

    Raises:
        CacheNotFoundError: If there is no cache yet.
        ConfigurationError: If the cache has no config account, or the
            account is missing on chain.
    """
    doc = store.load(cache_name, env)
    if doc.program.config is None:
        raise ConfigurationError("Cache has no config account; run 'mintctl upload' first")
    lines = await fetch_config_lines(ledger, doc, env)
    corrected = correct_from_chain(doc, lines, doc.indexes())
    if corrected:
        store.save(cache_name, env, doc)
    logger.info(
        "Verified %d cached items against %d on-chain lines: %d corrected",
        len(doc.items),
        len(lines),
        len(corrected),
    )
    return doc, corrected


class ReconcileSM(StateMachine):
    """Pass-level state machine.

    States:
        scanning -- Comparing items, cache and chain.
        working  -- Uploading and registering.
        done     -- Every item is on chain; further passes are no-ops.

    ``done`` is final: a pass that reaches it has nothing left to do.
    """

    scanning = State("scanning", initial=True, value="scanning")
    working = State("working", value="working")
    done = State("done", final=True, value="done")

    begin_work = scanning.to(working)
    rescan = working.to(scanning)
    finish = scanning.to(done)


class ReconciliationLoop:
    """Runs reconciliation passes for one ``(cache name, env)`` pair.

    Usage::

        loop = ReconciliationLoop(
            store=store, cache_name="temp", env="devnet", scheduler=scheduler,
            program=program, submitter=submitter, ledger=ledger, payer=payer,
            config=config,
        )
        report = await loop.run_pass(assets)

    Args:
        store: Cache store; the document is loaded fresh at every pass.
        cache_name: Cache name (``--cache-name``).
        env: Cluster name (``--env``).
        scheduler: Chunked upload scheduler.
        program: Instruction builders.
        submitter: Transaction submitter.
        ledger: Read access for config verification and rent lookups.
        payer: Operator keypair; pays fees and is the config authority.
        config: Upload tunables.
        progress: Optional Rich progress tracker (omit for headless mode).
    """

    def __init__(
        self,
        *,
        store: CacheStore,
        cache_name: str,
        env: str,
        scheduler: BatchScheduler,
        program: CandyMachineProgram,
        submitter: TransactionSubmitter,
        ledger: Ledger,
        payer: Keypair,
        config: UploadConfig,
        progress: Any | None = None,
    ) -> None:
        self._store = store
        self._cache_name = cache_name
        self._env = env
        self._scheduler = scheduler
        self._program = program
        self._submitter = submitter
        self._ledger = ledger
        self._payer = payer
        self._config = config
        self._progress = progress

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run_pass(self, assets: AssetSet) -> PassReport:
        """Run one pass and report what it achieved.

        Raises:
            ConfigurationError: If the cache contradicts the asset set or
                the recorded config account is missing on chain.
            LedgerFatalError: If a transaction is rejected.  Cache progress
                made before the rejection is saved.
        """
        sm = ReconcileSM()
        doc = self._store.load_or_create(self._cache_name, self._env)
        snapshot = doc.to_json()
        report = PassReport(total=len(assets))

        try:
            remaining = await self._scan(doc, assets, report)
            if remaining:
                sm.begin_work()
                logger.info("%d of %d items need work", len(remaining), len(assets))
                await self._work(doc, assets, report)
                sm.rescan()
                remaining = await self._scan(doc, assets, report)
            if not remaining:
                sm.finish()
        finally:
            if doc.to_json() != snapshot:
                self._save(doc)

        report.state = sm.current_state.value
        report.remaining = len(remaining)
        logger.info(
            "Pass finished in state %s: %d uploaded, %d registered, %d failed, %d remaining",
            report.state,
            report.uploaded,
            report.registered,
            len(report.failed),
            report.remaining,
        )
        return report

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def _scan(self, doc: CacheDocument, assets: AssetSet, report: PassReport) -> list[int]:
        """Return the indexes that are not yet on chain, correcting the cache first."""
        extra = [i for i in doc.indexes() if i >= len(assets)]
        if extra:
            raise ConfigurationError(
                f"Cache {self._cache_name!r} has items {extra[:10]} beyond the "
                f"{len(assets)} found in the asset directory"
            )
        # one entry per item; create derives items_available from the count
        for item in assets.items:
            doc.entry(item.index)

        if self._config.verify_on_chain and doc.program.config:
            lines = await fetch_config_lines(self._ledger, doc, self._env)
            corrected = correct_from_chain(doc, lines, [item.index for item in assets.items])
            report.corrected += len(corrected)

        return [
            item.index
            for item in assets.items
            if not ((entry := doc.get(item.index)) and entry.on_chain)
        ]

    # ------------------------------------------------------------------
    # Working
    # ------------------------------------------------------------------

    async def _work(self, doc: CacheDocument, assets: AssetSet, report: PassReport) -> None:
        if doc.program.config is None:
            await self._create_config(doc, assets)

        missing = [
            item
            for item in assets.items
            if not ((entry := doc.get(item.index)) and entry.link)
        ]
        chunks = self._scheduler.plan(missing)
        if self._config.chunks_per_pass is not None:
            chunks = chunks[: self._config.chunks_per_pass]

        if self._progress is not None:
            unregistered = sum(
                1 for item in assets.items if not ((e := doc.get(item.index)) and e.on_chain)
            )
            self._progress.set_totals(sum(len(c) for c in chunks), unregistered)
            self._progress.start()

        try:
            await self._register(doc, assets, report)

            for chunk_number, chunk in enumerate(chunks, start=1):
                logger.info(
                    "Chunk %d/%d: uploading items %d-%d",
                    chunk_number,
                    len(chunks),
                    chunk[0].index,
                    chunk[-1].index,
                )
                if self._progress is not None:
                    self._progress.start_chunk(chunk_number, len(chunk))

                for result in await self._scheduler.upload_chunk(chunk):
                    if result.ok:
                        doc.record_upload(result.index, result.link, result.name)
                        report.uploaded += 1
                    else:
                        report.failed[result.index] = result.error or "unknown error"
                        if result.fatal:
                            report.fatal.add(result.index)
                self._save(doc)
                if self._progress is not None:
                    self._progress.complete_chunk(chunk_number)

                await self._register(doc, assets, report)
        finally:
            if self._progress is not None:
                self._progress.stop()

    async def _create_config(self, doc: CacheDocument, assets: AssetSet) -> None:
        """Create the config account sized for the asset set and record it."""
        capacity = self._config.max_number_of_lines or assets.capacity
        if capacity < len(assets):
            raise ConfigurationError(
                f"max number ({capacity}) cannot be smaller than the number of "
                f"elements in the source folder ({len(assets)})"
            )

        manifest = load_manifest(assets.items[0])
        symbol = manifest.get("symbol", "")
        if len(symbol.encode("utf-8")) > MAX_SYMBOL_LENGTH:
            raise ConfigurationError(f"symbol {symbol!r} is longer than {MAX_SYMBOL_LENGTH} bytes")
        creators = manifest.get("properties", {}).get("creators", [])
        if len(creators) > MAX_CREATOR_LIMIT:
            raise ConfigurationError(f"at most {MAX_CREATOR_LIMIT} creators are allowed")
        try:
            creator_list = tuple(
                Creator(Pubkey.from_string(c["address"]), verified=True, share=int(c["share"]))
                for c in creators
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid creators in {assets.items[0].manifest_path}: {exc}") from exc

        config_keypair = Keypair()
        config = config_keypair.pubkey()
        uuid = str(config)[:6]
        payer = self._payer.pubkey()
        data = ConfigData(
            uuid=uuid,
            symbol=symbol,
            seller_fee_basis_points=int(manifest.get("seller_fee_basis_points", 0)),
            creators=creator_list,
            max_supply=0,
            is_mutable=self._config.is_mutable,
            retain_authority=self._config.retain_authority,
            max_number_of_lines=capacity,
        )
        lamports = await self._ledger.minimum_balance_for_rent_exemption(
            config_account_size(capacity)
        )

        logger.info("Creating config account %s for %d lines", config, capacity)
        instructions = self._program.create_config(
            payer=payer,
            config=config,
            authority=payer,
            update_authority=payer,
            data=data,
            lamports=lamports,
        )
        await self._submitter.submit(instructions, [self._payer, config_keypair], "create config")
        doc.set_program(uuid, str(config))
        self._save(doc)

    async def _register(self, doc: CacheDocument, assets: AssetSet, report: PassReport) -> None:
        """Register contiguous runs of uploaded items, one transaction per batch."""
        config = Pubkey.from_string(doc.program.config)
        authority = self._payer.pubkey()
        batch_size = self._config.lines_per_transaction

        while run := self._next_run(doc, len(assets)):
            for start in range(0, len(run), batch_size):
                batch = run[start : start + batch_size]
                lines = [self._config_line(doc, assets, index) for index in batch]
                instruction = self._program.add_config_lines(config, authority, batch[0], lines)
                await self._submitter.submit(
                    [instruction], [self._payer], f"config lines {batch[0]}-{batch[-1]}"
                )
                for index in batch:
                    doc.mark_on_chain(index)
                report.registered += len(batch)
                if self._progress is not None:
                    self._progress.lines_registered(len(batch))
                self._save(doc)

    @staticmethod
    def _next_run(doc: CacheDocument, count: int) -> list[int]:
        """Indexes from the lowest unregistered one up to the first gap."""
        run: list[int] = []
        for index in range(count):
            entry = doc.get(index)
            if entry is not None and entry.on_chain:
                if run:
                    break
                continue
            if entry is None or not entry.link:
                break
            run.append(index)
        return run

    @staticmethod
    def _config_line(doc: CacheDocument, assets: AssetSet, index: int) -> ConfigLine:
        entry = doc.get(index)
        name = entry.name
        if name is None:
            name = load_manifest(assets.items[index]).get("name", "")
            entry.name = name
        return ConfigLine(name=name, uri=entry.link)

    def _save(self, doc: CacheDocument) -> None:
        self._store.save(self._cache_name, self._env, doc)
