import logging

from sqlalchemy import select
from sqlalchemy.orm import Session
from web3 import Web3

from settlement.errors import NotFoundError, ValidationError
from settlement.models import Portfolio, PortfolioHolding, Wallet

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def open_account(self, user_id: str, address: str, chain: str) -> tuple[Portfolio, Wallet]:
        """Create the portfolio and wallet rows a user needs before any settlement. Idempotent."""
        if not Web3.is_address(address):
            raise ValidationError(f"Invalid wallet address: {address}")
        user_id = user_id.strip()
        portfolio = self.get_portfolio(user_id)
        wallet = self.get_wallet(user_id)
        if wallet is not None and wallet.address.lower() != address.lower():
            raise ValidationError(f"User {user_id} already has wallet {wallet.address}")
        if portfolio is None:
            portfolio = Portfolio(user_id=user_id)
            self.db.add(portfolio)
        if wallet is None:
            wallet = Wallet(user_id=user_id, address=Web3.to_checksum_address(address), chain=chain.lower())
            self.db.add(wallet)
            logger.info("Opened account for user %s (%s on %s)", user_id, wallet.address, wallet.chain)
        self.db.commit()
        return portfolio, wallet

    def get_portfolio(self, user_id: str) -> Portfolio | None:
        return self.db.execute(select(Portfolio).where(Portfolio.user_id == user_id)).scalar_one_or_none()

    def get_wallet(self, user_id: str) -> Wallet | None:
        return self.db.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()

    def require_wallet(self, user_id: str) -> Wallet:
        wallet = self.get_wallet(user_id)
        if wallet is None:
            raise NotFoundError(f"No wallet for user {user_id}")
        return wallet

    def require_portfolio(self, user_id: str) -> Portfolio:
        portfolio = self.get_portfolio(user_id)
        if portfolio is None:
            raise NotFoundError(f"No portfolio for user {user_id}")
        return portfolio

    def holdings(self, user_id: str) -> list[PortfolioHolding]:
        portfolio = self.require_portfolio(user_id)
        return list(
            self.db.execute(
                select(PortfolioHolding)
                .where(PortfolioHolding.portfolio_id == portfolio.id)
                .order_by(PortfolioHolding.symbol)
            ).scalars()
        )
