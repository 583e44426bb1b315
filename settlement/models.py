import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Float, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase

AMOUNT = Numeric(36, 18)
USD = Numeric(18, 8)
PERCENT = Numeric(9, 4)
RETURN_PERCENT = Numeric(20, 4)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class SessionStatus(str, Enum):
    AWAITING_TRANSFER = "awaiting_transfer"
    RECEIVED = "received"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    SWAP = "swap"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class DepositSession(Base):
    __tablename__ = "deposit_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    chain = Column(String(32), nullable=False)
    token_symbol = Column(String(16), nullable=False)
    token_address = Column(String(64), nullable=False)
    deposit_address = Column(String(64), nullable=False, index=True)
    expected_amount = Column(AMOUNT, nullable=True)
    min_amount = Column(AMOUNT, nullable=False)
    max_amount = Column(AMOUNT, nullable=True)
    status = Column(String(32), nullable=False, default=SessionStatus.AWAITING_TRANSFER.value, index=True)
    created_at_block = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    matched_tx_id = Column(String(80), nullable=True)
    matched_log_index = Column(Integer, nullable=True)
    matched_from_address = Column(String(64), nullable=True)
    matched_amount = Column(AMOUNT, nullable=True)
    matched_block_number = Column(Integer, nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    transaction_id = Column(String(36), nullable=True)
    failure_reason = Column(Text, nullable=True)
    review_reason = Column(Text, nullable=True)
    received_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("chain", "tx_id", "log_index", name="processed_events_chain_tx_log"),)

    id = Column(Integer, primary_key=True)
    chain = Column(String(32), nullable=False)
    tx_id = Column(String(80), nullable=False)
    log_index = Column(Integer, nullable=False)
    consumed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("chain", "tx_id", "log_index", name="transactions_chain_tx_log"),
        UniqueConstraint("payment_reference", name="transactions_payment_reference"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    source_asset = Column(String(16), nullable=True)
    source_amount = Column(AMOUNT, nullable=True)
    destination_asset = Column(String(16), nullable=True)
    destination_amount = Column(AMOUNT, nullable=True)
    value_usd = Column(USD, nullable=True)
    allocation = Column(JSON, nullable=True)
    payment_reference = Column(String(128), nullable=True)
    payment_receipt = Column(String(128), nullable=True)
    phone_number = Column(String(32), nullable=True)
    exchange_rate = Column(Numeric(18, 8), nullable=True)
    chain = Column(String(32), nullable=True)
    tx_id = Column(String(80), nullable=True)
    log_index = Column(Integer, nullable=True)
    deposit_session_id = Column(String(36), nullable=True, index=True)
    provider_metadata = Column(JSON, nullable=True)
    settlement_reference = Column(String(128), nullable=True)
    failure_reason = Column(Text, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def order_id(self) -> str | None:
        return (self.provider_metadata or {}).get("order_id")


class Portfolio(Base):
    __tablename__ = "portfolios"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False)
    cash_value_usd = Column(USD, nullable=False, default=0)
    stable_yields_value_usd = Column(USD, nullable=False, default=0)
    defi_yield_value_usd = Column(USD, nullable=False, default=0)
    tokenized_gold_value_usd = Column(USD, nullable=False, default=0)
    bluechip_crypto_value_usd = Column(USD, nullable=False, default=0)
    total_value_usd = Column(USD, nullable=False, default=0)
    cash_percent = Column(PERCENT, nullable=False, default=0)
    stable_yields_percent = Column(PERCENT, nullable=False, default=0)
    defi_yield_percent = Column(PERCENT, nullable=False, default=0)
    tokenized_gold_percent = Column(PERCENT, nullable=False, default=0)
    bluechip_crypto_percent = Column(PERCENT, nullable=False, default=0)
    total_deposited_usd = Column(USD, nullable=False, default=0)
    total_withdrawn_usd = Column(USD, nullable=False, default=0)
    all_time_gain_usd = Column(USD, nullable=False, default=0)
    all_time_return_percent = Column(RETURN_PERCENT, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False)
    address = Column(String(64), nullable=False, index=True)
    chain = Column(String(32), nullable=False)
    cash_balance = Column(AMOUNT, nullable=False, default=0)
    stable_yields_balance = Column(AMOUNT, nullable=False, default=0)
    defi_yield_balance = Column(AMOUNT, nullable=False, default=0)
    tokenized_gold_balance = Column(AMOUNT, nullable=False, default=0)
    bluechip_crypto_balance = Column(AMOUNT, nullable=False, default=0)
    balances_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PortfolioHolding(Base):
    __tablename__ = "portfolio_holdings"
    __table_args__ = (UniqueConstraint("portfolio_id", "symbol", name="portfolio_holdings_portfolio_symbol"),)

    id = Column(Integer, primary_key=True)
    portfolio_id = Column(Integer, nullable=False, index=True)
    symbol = Column(String(16), nullable=False)
    category = Column(String(32), nullable=False)
    balance = Column(AMOUNT, nullable=False, default=0)
    value_usd = Column(USD, nullable=False, default=0)
    cost_basis_usd = Column(USD, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True)
    job_key = Column(String(160), unique=True, nullable=False)
    task = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    state = Column(String(16), nullable=False, default=JobState.WAITING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_base_sec = Column(Float, nullable=False, default=2.0)
    run_at = Column(DateTime, nullable=False, index=True)
    lease_token = Column(String(36), nullable=True)
    locked_until = Column(DateTime, nullable=True)
    repeat_every_sec = Column(Integer, nullable=True)
    repeat_limit = Column(Integer, nullable=True)
    polls = Column(Integer, nullable=False, default=0)
    deadline = Column(DateTime, nullable=True)
    stalled_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
