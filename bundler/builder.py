"""
Bundle Builder
==============

Assembles the two co-dependent transactions of an atomic buy bundle.

Each slot gets:
1. Compute budget (unit limit + unit price)
2. Idempotent destination token account create, only when missing
3. A temporary wrapped-SOL holding account funded with rent + max input
4. The swap instruction
5. The relay tip (tip-paying slot only)
6. Close of the holding account back to the owner

Instructions are assembled once per run. Every attempt re-signs the same
instructions against a fresh blockhash, so both legs always target the same
pool snapshot and no signature is ever reused.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, TransferParams, create_account, transfer
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT
from spl.token.instructions import close_account, get_associated_token_address, initialize_account
from spl.token.models import CloseAccountParams, InitializeAccountParams

from bundler.chain import SolanaChainClient
from bundler.launchpad import OperationContext, buy_exact_out_instruction

logger = logging.getLogger(__name__)

TOKEN_ACCOUNT_SIZE = 165
CREATE_IDEMPOTENT = 1

SwapInstructionFactory = Callable[[OperationContext, Pubkey, Pubkey, Pubkey], Instruction]


class SlotRole(Enum):
    """Position of a transaction inside the bundle."""
    PRIMARY = "primary"
    TIP_PAYER = "tip_payer"


@dataclass(frozen=True)
class ComputeBudget:
    unit_limit: int = 600_000
    unit_price_micro_lamports: int = 0

    def instructions(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self.unit_limit),
            set_compute_unit_price(self.unit_price_micro_lamports),
        ]


def create_idempotent_ata_instruction(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    """Associated token account ``CreateIdempotent``; succeeds if the account exists."""
    ata = get_associated_token_address(owner, mint, token_program_id)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(ata, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(token_program_id, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([CREATE_IDEMPOTENT]), accounts)


@dataclass
class DestinationAccount:
    address: Pubkey
    create_instruction: Optional[Instruction] = None

    @property
    def needs_create(self) -> bool:
        return self.create_instruction is not None


@dataclass
class HoldingAccount:
    """Temporary wrapped-SOL account that funds one swap."""
    keypair: Keypair
    lamports: int
    open_instructions: List[Instruction]
    close_instruction: Instruction

    @property
    def address(self) -> Pubkey:
        return self.keypair.pubkey()


@dataclass
class TransactionSlot:
    """One leg of the bundle: unsigned instructions plus the keys that sign them."""
    role: SlotRole
    owner: Keypair
    instructions: List[Instruction]
    co_signers: List[Keypair] = field(default_factory=list)
    destination: Optional[DestinationAccount] = None
    holding_account: Optional[HoldingAccount] = None
    blockhash: Optional[Hash] = None
    transaction: Optional[Transaction] = None

    @property
    def payer(self) -> Pubkey:
        return self.owner.pubkey()

    def sign(self, blockhash: Hash) -> Transaction:
        """Re-sign against ``blockhash``. Replaces any earlier signature."""
        message = Message.new_with_blockhash(self.instructions, self.payer, blockhash)
        self.transaction = Transaction([self.owner, *self.co_signers], message, blockhash)
        self.blockhash = blockhash
        return self.transaction

    def serialize_b64(self) -> str:
        if self.transaction is None:
            raise RuntimeError(f"{self.role.value} slot has not been signed")
        return base64.b64encode(bytes(self.transaction)).decode("ascii")

    @property
    def signature(self) -> Optional[Signature]:
        if self.transaction is None:
            return None
        return self.transaction.signatures[0]


@dataclass
class Bundle:
    """Both legs signed against one blockhash snapshot."""
    slots: List[TransactionSlot]
    blockhash: Hash
    encoded: List[str]

    @property
    def signatures(self) -> List[Signature]:
        return [slot.transaction.signatures[0] for slot in self.slots]

    @property
    def sizes(self) -> List[int]:
        return [len(bytes(slot.transaction)) for slot in self.slots]


class PreparedBundle:
    """Instructions assembled once per run; signed fresh for every attempt."""

    def __init__(self, primary: TransactionSlot, tip_payer: TransactionSlot, tip_account: Pubkey):
        if primary.role is not SlotRole.PRIMARY or tip_payer.role is not SlotRole.TIP_PAYER:
            raise ValueError("Bundle slots must be (PRIMARY, TIP_PAYER)")
        self.slots = [primary, tip_payer]
        self.tip_account = tip_account

    def refresh(self, blockhash: Hash) -> Bundle:
        for slot in self.slots:
            slot.sign(blockhash)
        encoded = [slot.serialize_b64() for slot in self.slots]
        return Bundle(slots=list(self.slots), blockhash=blockhash, encoded=encoded)


class BundleBuilder:
    """
    Builds the primary and tip-paying slots for one operation context.

    Args:
        chain: Upstream RPC, used for account existence and rent.
        context: Pool snapshot, mint and amounts shared by both legs.
        compute: Compute budget applied to every slot.
        tip_lamports: Tip paid by the tip-paying slot.
        swap_instruction_factory: Encoder for the swap itself.
    """

    def __init__(
        self,
        chain: SolanaChainClient,
        context: OperationContext,
        compute: Optional[ComputeBudget] = None,
        tip_lamports: int = 2_000_000,
        swap_instruction_factory: SwapInstructionFactory = buy_exact_out_instruction,
    ):
        self.chain = chain
        self.context = context
        self.compute = compute or ComputeBudget()
        self.tip_lamports = tip_lamports
        self.swap_instruction_factory = swap_instruction_factory
        self._rent_exempt: Optional[int] = None

    def compute_budget_instructions(self) -> List[Instruction]:
        return self.compute.instructions()

    async def ensure_destination_account(self, owner: Keypair) -> DestinationAccount:
        """Resolve the owner's token account for the mint.

        Safe to call repeatedly: the address is deterministic and the create
        instruction is the idempotent variant.
        """
        address = get_associated_token_address(owner.pubkey(), self.context.mint, self.context.mint_program)
        if await self.chain.account_exists(address):
            return DestinationAccount(address=address)
        logger.info(f"Destination {address} missing, adding idempotent create")
        create_ix = create_idempotent_ata_instruction(
            owner.pubkey(), owner.pubkey(), self.context.mint, self.context.mint_program
        )
        return DestinationAccount(address=address, create_instruction=create_ix)

    async def _rent_exempt_minimum(self) -> int:
        if self._rent_exempt is None:
            self._rent_exempt = await self.chain.get_minimum_balance(TOKEN_ACCOUNT_SIZE)
        return self._rent_exempt

    async def open_holding_account(self, owner: Keypair) -> HoldingAccount:
        holding = Keypair()
        rent = await self._rent_exempt_minimum()
        lamports = rent + self.context.max_amount_in
        open_ixs = [
            create_account(
                CreateAccountParams(
                    from_pubkey=owner.pubkey(),
                    to_pubkey=holding.pubkey(),
                    lamports=lamports,
                    space=TOKEN_ACCOUNT_SIZE,
                    owner=TOKEN_PROGRAM_ID,
                )
            ),
            initialize_account(
                InitializeAccountParams(
                    program_id=TOKEN_PROGRAM_ID,
                    account=holding.pubkey(),
                    mint=WRAPPED_SOL_MINT,
                    owner=owner.pubkey(),
                )
            ),
        ]
        close_ix = close_account(
            CloseAccountParams(
                program_id=TOKEN_PROGRAM_ID,
                account=holding.pubkey(),
                dest=owner.pubkey(),
                owner=owner.pubkey(),
                signers=[],
            )
        )
        return HoldingAccount(keypair=holding, lamports=lamports, open_instructions=open_ixs, close_instruction=close_ix)

    def tip_instruction(self, owner: Keypair, tip_account: Pubkey) -> Instruction:
        return transfer(
            TransferParams(from_pubkey=owner.pubkey(), to_pubkey=tip_account, lamports=self.tip_lamports)
        )

    async def build_slot(self, role: SlotRole, owner: Keypair, tip_account: Optional[Pubkey] = None) -> TransactionSlot:
        if role is SlotRole.TIP_PAYER and tip_account is None:
            raise ValueError("tip-paying slot needs a tip account")

        destination = await self.ensure_destination_account(owner)
        holding = await self.open_holding_account(owner)

        instructions: List[Instruction] = self.compute_budget_instructions()
        if destination.needs_create:
            instructions.append(destination.create_instruction)
        instructions.extend(holding.open_instructions)
        instructions.append(
            self.swap_instruction_factory(self.context, owner.pubkey(), destination.address, holding.address)
        )
        if role is SlotRole.TIP_PAYER:
            instructions.append(self.tip_instruction(owner, tip_account))
        instructions.append(holding.close_instruction)

        logger.debug(
            f"Built {role.value} slot for {owner.pubkey()}: {len(instructions)} instructions, "
            f"holding {holding.address} funded {holding.lamports} lamports"
        )
        return TransactionSlot(
            role=role,
            owner=owner,
            instructions=instructions,
            co_signers=[holding.keypair],
            destination=destination,
            holding_account=holding,
        )

    async def materialize(self, primary: Keypair, tip_payer: Keypair, tip_account: Pubkey) -> PreparedBundle:
        """Assemble both slots once for the whole run."""
        primary_slot = await self.build_slot(SlotRole.PRIMARY, primary)
        tip_slot = await self.build_slot(SlotRole.TIP_PAYER, tip_payer, tip_account)
        logger.info(
            f"Prepared bundle: primary={primary.pubkey()} tip_payer={tip_payer.pubkey()} "
            f"tip={self.tip_lamports} lamports -> {tip_account}"
        )
        return PreparedBundle(primary_slot, tip_slot, tip_account)
