"""Instruction builders for the candy machine program.

Builders are pure: they never touch the network.  Rent amounts and
addresses that require a lookup are passed in by the caller.
"""

from __future__ import annotations

from collections.abc import Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import (
    CreateAccountParams,
    TransferParams,
    create_account,
    transfer,
)
from solders.sysvar import CLOCK, RENT
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    InitializeMintParams,
    MintToParams,
    create_associated_token_account,
    get_associated_token_address,
    initialize_mint,
    mint_to,
)

from mintctl.constants import (
    CANDY_MACHINE_PROGRAM_ID,
    MAX_LINES_PER_TRANSACTION,
    MINT_ACCOUNT_SIZE,
    TOKEN_METADATA_PROGRAM_ID,
)
from mintctl.ledger.layout import (
    CandyMachineData,
    ConfigData,
    ConfigLine,
    config_account_size,
    i64,
    instruction_discriminator,
    option,
    u8,
    u32,
    u64,
    vec,
)


def _meta(pubkey: Pubkey, *, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=writable)


class CandyMachineProgram:
    """Builds instructions for one deployment of the candy machine program.

    Usage::

        program = CandyMachineProgram()
        ix = program.add_config_lines(config, authority, 0, lines)
    """

    def __init__(
        self,
        program_id: Pubkey | str = CANDY_MACHINE_PROGRAM_ID,
        token_metadata_program_id: Pubkey | str = TOKEN_METADATA_PROGRAM_ID,
    ) -> None:
        self.program_id = _pubkey(program_id)
        self.token_metadata_program_id = _pubkey(token_metadata_program_id)

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def candy_machine_address(self, config: Pubkey, uuid: str) -> tuple[Pubkey, int]:
        """Derive the candy machine PDA from ``["candy_machine", config, uuid]``."""
        return Pubkey.find_program_address(
            [b"candy_machine", bytes(config), uuid.encode("utf-8")], self.program_id
        )

    def metadata_address(self, mint: Pubkey) -> Pubkey:
        seeds = [b"metadata", bytes(self.token_metadata_program_id), bytes(mint)]
        return Pubkey.find_program_address(seeds, self.token_metadata_program_id)[0]

    def master_edition_address(self, mint: Pubkey) -> Pubkey:
        seeds = [b"metadata", bytes(self.token_metadata_program_id), bytes(mint), b"edition"]
        return Pubkey.find_program_address(seeds, self.token_metadata_program_id)[0]

    # ------------------------------------------------------------------
    # Config account
    # ------------------------------------------------------------------

    def create_config(
        self,
        *,
        payer: Pubkey,
        config: Pubkey,
        authority: Pubkey,
        update_authority: Pubkey,
        data: ConfigData,
        lamports: int,
    ) -> list[Instruction]:
        """Allocate the config account and initialize it.

        The config keypair must sign alongside *payer*.  *lamports* is the
        rent-exempt minimum for :func:`config_account_size`.
        """
        allocate = create_account(
            CreateAccountParams(
                from_pubkey=payer,
                to_pubkey=config,
                lamports=lamports,
                space=config_account_size(data.max_number_of_lines),
                owner=self.program_id,
            )
        )
        initialize = Instruction(
            program_id=self.program_id,
            data=instruction_discriminator("initialize_config") + data.encode(),
            accounts=[
                _meta(config, writable=True),
                _meta(authority),
                _meta(payer, signer=True, writable=True),
                _meta(update_authority),
                _meta(SYSTEM_PROGRAM_ID),
                _meta(RENT),
            ],
        )
        return [allocate, initialize]

    def add_config_lines(
        self, config: Pubkey, authority: Pubkey, index: int, lines: Sequence[ConfigLine]
    ) -> Instruction:
        """Write *lines* into slots ``index .. index + len(lines) - 1``.

        Raises:
            ValueError: If more than :data:`MAX_LINES_PER_TRANSACTION` lines
                are given.
        """
        if not 1 <= len(lines) <= MAX_LINES_PER_TRANSACTION:
            raise ValueError(
                f"add_config_lines takes 1..{MAX_LINES_PER_TRANSACTION} lines, got {len(lines)}"
            )
        return Instruction(
            program_id=self.program_id,
            data=instruction_discriminator("add_config_lines")
            + u32(index)
            + vec(list(lines), ConfigLine.encode),
            accounts=[
                _meta(config, writable=True),
                _meta(authority, signer=True),
            ],
        )

    # ------------------------------------------------------------------
    # Candy machine
    # ------------------------------------------------------------------

    def initialize_candy_machine(
        self,
        *,
        candy_machine: Pubkey,
        bump: int,
        wallet: Pubkey,
        config: Pubkey,
        authority: Pubkey,
        payer: Pubkey,
        data: CandyMachineData,
        token_mint: Pubkey | None = None,
    ) -> Instruction:
        accounts = [
            _meta(candy_machine, writable=True),
            _meta(wallet),
            _meta(config),
            _meta(authority, signer=True),
            _meta(payer, signer=True, writable=True),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(RENT),
        ]
        if token_mint is not None:
            accounts.append(_meta(token_mint))
        return Instruction(
            program_id=self.program_id,
            data=instruction_discriminator("initialize_candy_machine") + u8(bump) + data.encode(),
            accounts=accounts,
        )

    def update_candy_machine(
        self,
        *,
        candy_machine: Pubkey,
        authority: Pubkey,
        price: int | None,
        go_live_date: int | None,
    ) -> Instruction:
        return Instruction(
            program_id=self.program_id,
            data=instruction_discriminator("update_candy_machine")
            + option(price, u64)
            + option(go_live_date, i64),
            accounts=[
                _meta(candy_machine, writable=True),
                _meta(authority, signer=True),
            ],
        )

    def mint_nft(
        self,
        *,
        config: Pubkey,
        candy_machine: Pubkey,
        payer: Pubkey,
        wallet: Pubkey,
        mint: Pubkey,
        mint_rent: int,
        token_mint: Pubkey | None = None,
    ) -> list[Instruction]:
        """Create a fresh mint owned by *payer* and redeem one item into it.

        The *mint* keypair must sign alongside *payer*.  When the machine is
        priced in an SPL token, payment is taken from *payer*'s associated
        token account for *token_mint*.
        """
        token_account = get_associated_token_address(payer, mint)
        instructions = [
            create_account(
                CreateAccountParams(
                    from_pubkey=payer,
                    to_pubkey=mint,
                    lamports=mint_rent,
                    space=MINT_ACCOUNT_SIZE,
                    owner=TOKEN_PROGRAM_ID,
                )
            ),
            initialize_mint(
                InitializeMintParams(
                    decimals=0,
                    program_id=TOKEN_PROGRAM_ID,
                    mint=mint,
                    mint_authority=payer,
                    freeze_authority=payer,
                )
            ),
            create_associated_token_account(payer, payer, mint),
            mint_to(
                MintToParams(
                    program_id=TOKEN_PROGRAM_ID,
                    mint=mint,
                    dest=token_account,
                    mint_authority=payer,
                    amount=1,
                )
            ),
        ]

        accounts = [
            _meta(config),
            _meta(candy_machine, writable=True),
            _meta(payer, signer=True, writable=True),
            _meta(wallet, writable=True),
            _meta(self.metadata_address(mint), writable=True),
            _meta(mint, writable=True),
            _meta(payer, signer=True),
            _meta(payer, signer=True),
            _meta(self.master_edition_address(mint), writable=True),
            _meta(self.token_metadata_program_id),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(RENT),
            _meta(CLOCK),
        ]
        if token_mint is not None:
            accounts.append(_meta(get_associated_token_address(payer, token_mint), writable=True))
            accounts.append(_meta(payer, signer=True))

        instructions.append(
            Instruction(
                program_id=self.program_id,
                data=instruction_discriminator("mint_nft"),
                accounts=accounts,
            )
        )
        return instructions

    def withdraw_funds(self, config: Pubkey, authority: Pubkey) -> Instruction:
        """Close *config* and return its lamports to *authority*."""
        return Instruction(
            program_id=self.program_id,
            data=instruction_discriminator("withdraw_funds"),
            accounts=[
                _meta(config, writable=True),
                _meta(authority, signer=True, writable=True),
            ],
        )

    @staticmethod
    def transfer(source: Pubkey, destination: Pubkey, lamports: int) -> Instruction:
        return transfer(
            TransferParams(from_pubkey=source, to_pubkey=destination, lamports=lamports)
        )


def _pubkey(value: Pubkey | str) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)
