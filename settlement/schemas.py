from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccountRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    address: str
    chain: str = "base"


class AccountResponse(BaseModel):
    user_id: str
    address: str
    chain: str
    portfolio_id: int


class HoldingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    symbol: str
    category: str
    balance: Decimal
    value_usd: Decimal
    cost_basis_usd: Decimal


class PortfolioResponse(BaseModel):
    user_id: str
    total_value_usd: Decimal
    values_usd: Dict[str, Decimal]
    percentages: Dict[str, Decimal]
    total_deposited_usd: Decimal
    total_withdrawn_usd: Decimal
    all_time_gain_usd: Decimal
    all_time_return_percent: Decimal
    holdings: List[HoldingOut]


class DepositIntentRequest(BaseModel):
    user_id: str
    chain: str | None = None
    token: str = "USDC"
    expected_amount: Decimal | None = Field(default=None, gt=0)
    min_amount: Decimal | None = Field(default=None, gt=0)
    max_amount: Decimal | None = Field(default=None, gt=0)


class DepositIntentResponse(BaseModel):
    session_id: str
    deposit_address: str
    chain: str
    token: str
    token_address: str
    min_amount: Decimal
    max_amount: Decimal | None = None
    expected_amount: Decimal | None = None
    expires_at: datetime
    status: str


class DepositIntentStatusResponse(BaseModel):
    session_id: str
    status: str
    tx_id: str | None = None
    amount: Decimal | None = None
    confirmations: int = 0
    transaction_id: str | None = None


class ReviewSession(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    chain: str
    status: str
    matched_tx_id: str | None = None
    matched_log_index: int | None = None
    review_reason: str | None = None


class OnchainDepositRequest(BaseModel):
    user_id: str
    chain: str
    tx_id: str = Field(min_length=1)
    log_index: int = Field(ge=0)
    token_symbol: str = "USDC"
    amount: Decimal = Field(gt=0)
    from_address: str | None = None
    block_number: int | None = None


class PaymentDepositRequest(BaseModel):
    user_id: str
    amount: Decimal = Field(gt=0)
    exchange_rate: Decimal = Field(gt=0)
    reference: str = Field(min_length=1, max_length=128)
    phone_number: str | None = None
    allocation: Optional[Dict[str, Decimal]] = None


class PaymentCallbackRequest(BaseModel):
    external_ref: str
    amount: Decimal
    phone_or_account: str | None = None
    status: str
    receipt: str | None = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: str
    status: str
    source_asset: str | None = None
    source_amount: Decimal | None = None
    destination_asset: str | None = None
    destination_amount: Decimal | None = None
    value_usd: Decimal | None = None
    chain: str | None = None
    tx_id: str | None = None
    log_index: int | None = None
    payment_reference: str | None = None
    provider_metadata: dict | None = None
    settlement_reference: str | None = None
    failure_reason: str | None = None
    completed_at: datetime | None = None
    created_at: datetime


class SwapRequest(BaseModel):
    user_id: str
    from_asset: str
    to_asset: str
    amount: Decimal = Field(gt=0)


class SwapQuoteResponse(BaseModel):
    provider: str
    from_asset: str
    to_asset: str
    amount: Decimal
    to_amount: Decimal
    route: List[str]


class RebalanceRequest(BaseModel):
    target: Dict[str, Decimal]
    dry_run: bool = False


class PlannedSwapOut(BaseModel):
    from_category: str
    to_category: str
    from_asset: str
    to_asset: str
    amount_usd: Decimal


class RebalanceResponse(BaseModel):
    drift: Decimal
    needed: bool
    swaps: List[PlannedSwapOut]
    group_id: str | None = None
    transaction_ids: List[str] = []


class AllocatedCashResponse(BaseModel):
    user_id: str
    chain: str
    amount: Decimal


class QueueMetricsResponse(BaseModel):
    accepting: bool
    jobs: Dict[str, Dict[str, int]]
    monitor: Dict[str, dict]
    recent_alerts: List[dict]


class FailedJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_key: str
    task: str
    attempts: int
    last_error: str | None = None
    finished_at: datetime | None = None


class RetryResponse(BaseModel):
    job_key: str
    requeued: bool
