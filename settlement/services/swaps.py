import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.errors import NotFoundError, ValidationError
from settlement.jobs.tasks import SWAP_CONFIRMATION, SWAP_EXECUTION
from settlement.models import PortfolioHolding, Transaction
from settlement.money import from_base_units, quantize_usd, require_decimal, to_base_units
from settlement.services.accounts import AccountService
from settlement.services.swap_provider import QuoteRequest, SwapQuote
from settlement.services.transactions import PENDING, PROCESSING, TransactionStore

logger = logging.getLogger(__name__)


class SwapService:
    def __init__(self, db: Session, ctx) -> None:
        self.db = db
        self.ctx = ctx
        self.transactions = TransactionStore(db)
        self.accounts = AccountService(db)

    @property
    def chain(self) -> str:
        return self.ctx.settings.swap_network

    def _check_assets(self, from_asset: str, to_asset: str) -> None:
        catalog = self.ctx.catalog
        for symbol in (from_asset, to_asset):
            if catalog.get_asset_category(symbol) is None:
                raise ValidationError(f"{symbol} cannot be swapped")
            catalog.token_address(symbol, self.chain)
        if from_asset.upper() == to_asset.upper():
            raise ValidationError("Swap assets must differ")

    def build_request(self, from_asset: str, to_asset: str, amount: Decimal, wallet_address: str) -> QuoteRequest:
        catalog = self.ctx.catalog
        return QuoteRequest(
            chain=self.chain,
            from_token=catalog.token_address(from_asset, self.chain),
            to_token=catalog.token_address(to_asset, self.chain),
            amount_base_units=to_base_units(amount, catalog.decimals(from_asset)),
            wallet_address=wallet_address,
            slippage=self.ctx.settings.default_slippage,
        )

    def request_for(self, tx: Transaction) -> QuoteRequest:
        wallet = self.accounts.require_wallet(tx.user_id)
        return self.build_request(tx.source_asset, tx.destination_asset, Decimal(tx.source_amount), wallet.address)

    def quote(self, user_id: str, from_asset: str, to_asset: str, amount) -> tuple[SwapQuote, Decimal]:
        amount = require_decimal(amount)
        if amount <= 0:
            raise ValidationError("Swap amount must be positive")
        self._check_assets(from_asset, to_asset)
        wallet = self.accounts.require_wallet(user_id)
        quote = self.ctx.swap_provider.get_quote(self.build_request(from_asset, to_asset, amount, wallet.address))
        to_amount = from_base_units(quote.to_amount_base_units, self.ctx.catalog.decimals(to_asset))
        return quote, to_amount

    def usd_value(self, user_id: str, symbol: str, amount: Decimal) -> Decimal:
        """Value `amount` of `symbol` at the holding's book price, or at par without one."""
        portfolio = self.accounts.require_portfolio(user_id)
        holding = self.db.execute(
            select(PortfolioHolding).where(
                PortfolioHolding.portfolio_id == portfolio.id, PortfolioHolding.symbol == symbol.upper()
            )
        ).scalar_one_or_none()
        if holding is None or Decimal(holding.balance) <= 0:
            return quantize_usd(amount)
        return quantize_usd(amount * Decimal(holding.value_usd) / Decimal(holding.balance))

    def units_for_usd(self, user_id: str, symbol: str, usd: Decimal) -> Decimal:
        portfolio = self.accounts.require_portfolio(user_id)
        holding = self.db.execute(
            select(PortfolioHolding).where(
                PortfolioHolding.portfolio_id == portfolio.id, PortfolioHolding.symbol == symbol.upper()
            )
        ).scalar_one_or_none()
        if holding is None or Decimal(holding.value_usd) <= 0:
            return usd
        return usd * Decimal(holding.balance) / Decimal(holding.value_usd)

    def create_swap(self, user_id: str, from_asset: str, to_asset: str, amount, metadata: dict | None = None) -> Transaction:
        amount = require_decimal(amount)
        self._check_assets(from_asset, to_asset)
        self.accounts.require_wallet(user_id)
        tx = self.transactions.create_swap(
            user_id,
            from_asset,
            to_asset,
            amount,
            self.chain,
            metadata=metadata,
            value_usd=self.usd_value(user_id, from_asset, amount),
        )
        self.ctx.queue.enqueue(self.ctx.tasks[SWAP_EXECUTION], tx.id, {"transaction_id": tx.id}, db=self.db)
        return tx

    def execute_swap(self, user_id: str, from_asset: str, to_asset: str, amount) -> Transaction:
        """Record the swap and hand it to the execution worker."""
        tx = self.create_swap(user_id, from_asset, to_asset, amount)
        self.db.commit()
        return tx

    def enqueue_confirmation(self, tx: Transaction) -> None:
        task = self.ctx.tasks[SWAP_CONFIRMATION]
        self.ctx.queue.enqueue(
            task, tx.id, {"transaction_id": tx.id}, delay_sec=task.repeat_every_sec or 0, db=self.db
        )

    def release_claim(self, transaction_id: str) -> bool:
        """Undo an execution claim when the provider rejected the order outright."""
        tx = self.transactions.get(transaction_id, for_update=True)
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if tx.status != PROCESSING or tx.order_id:
            return False
        tx.status = PENDING
        self.db.flush()
        logger.info("Swap %s returned to pending", transaction_id)
        return True
