import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from settlement.config import configure_logging, load_settings
from settlement.context import AppContext
from settlement.errors import InvalidTransition, NotFoundError, SwapProviderError, ValidationError
from settlement.jobs.worker_pool import WorkerPool
from settlement.schemas import (
    AccountRequest,
    AccountResponse,
    AllocatedCashResponse,
    DepositIntentRequest,
    DepositIntentResponse,
    DepositIntentStatusResponse,
    FailedJobOut,
    HoldingOut,
    OnchainDepositRequest,
    PaymentCallbackRequest,
    PaymentDepositRequest,
    PlannedSwapOut,
    PortfolioResponse,
    QueueMetricsResponse,
    RebalanceRequest,
    RebalanceResponse,
    RetryResponse,
    ReviewSession,
    SwapQuoteResponse,
    SwapRequest,
    TransactionResponse,
)
from settlement.services.accounts import AccountService
from settlement.services.catalog import CATEGORIES
from settlement.services.deposits import DepositService
from settlement.services.rebalance import RebalanceService
from settlement.services.swaps import SwapService
from settlement.services.transactions import OnchainDepositParams, TransactionStore

logger = logging.getLogger(__name__)


def create_app(ctx: AppContext | None = None) -> FastAPI:
    app = FastAPI(title="Settlement Pipeline")
    app.state.ctx = ctx
    app.state.owns_ctx = ctx is None
    app.state.pool = None

    @app.on_event("startup")
    def startup() -> None:
        if app.state.ctx is None:
            settings = load_settings()
            configure_logging(settings.log_level)
            app.state.ctx = AppContext.from_settings(settings)
        app.state.ctx.open()
        if app.state.ctx.settings.workers_in_api:
            app.state.pool = WorkerPool(app.state.ctx)
            app.state.pool.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if app.state.pool:
            app.state.pool.stop()
        if app.state.owns_ctx and app.state.ctx is not None:
            app.state.ctx.close()

    @app.exception_handler(ValidationError)
    def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    def invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(SwapProviderError)
    def provider_error(request: Request, exc: SwapProviderError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    register_routes(app)
    return app


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def get_db(ctx: AppContext = Depends(get_ctx)):
    db = ctx.session_factory()
    try:
        yield db
    finally:
        db.close()


def portfolio_response(db: Session, user_id: str) -> PortfolioResponse:
    accounts = AccountService(db)
    portfolio = accounts.require_portfolio(user_id)
    return PortfolioResponse(
        user_id=user_id,
        total_value_usd=portfolio.total_value_usd,
        values_usd={category: getattr(portfolio, f"{category}_value_usd") for category in CATEGORIES},
        percentages={category: getattr(portfolio, f"{category}_percent") for category in CATEGORIES},
        total_deposited_usd=portfolio.total_deposited_usd,
        total_withdrawn_usd=portfolio.total_withdrawn_usd,
        all_time_gain_usd=portfolio.all_time_gain_usd,
        all_time_return_percent=portfolio.all_time_return_percent,
        holdings=[HoldingOut.model_validate(holding) for holding in accounts.holdings(user_id)],
    )


def register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/accounts", response_model=AccountResponse)
    def open_account(request: AccountRequest, db: Session = Depends(get_db)) -> AccountResponse:
        portfolio, wallet = AccountService(db).open_account(request.user_id, request.address, request.chain)
        return AccountResponse(user_id=wallet.user_id, address=wallet.address, chain=wallet.chain, portfolio_id=portfolio.id)

    @app.get("/portfolio/{user_id}", response_model=PortfolioResponse)
    def get_portfolio(user_id: str, db: Session = Depends(get_db)) -> PortfolioResponse:
        return portfolio_response(db, user_id)

    @app.get("/accounts/{user_id}/allocated-cash", response_model=AllocatedCashResponse)
    def allocated_cash(user_id: str, chain: str, db: Session = Depends(get_db)) -> AllocatedCashResponse:
        amount = TransactionStore(db).allocated_cash(user_id, chain)
        return AllocatedCashResponse(user_id=user_id, chain=chain.lower(), amount=amount)

    @app.post("/deposits/intents", response_model=DepositIntentResponse)
    def create_deposit_intent(
        request: DepositIntentRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> DepositIntentResponse:
        session = DepositService(db, ctx).create_deposit_intent(
            request.user_id,
            chain=request.chain,
            token=request.token.upper(),
            expected_amount=request.expected_amount,
            min_amount=request.min_amount,
            max_amount=request.max_amount,
        )
        return DepositIntentResponse(
            session_id=session.id,
            deposit_address=session.deposit_address,
            chain=session.chain,
            token=session.token_symbol,
            token_address=session.token_address,
            min_amount=session.min_amount,
            max_amount=session.max_amount,
            expected_amount=session.expected_amount,
            expires_at=session.expires_at,
            status=session.status,
        )

    @app.get("/deposits/intents/{session_id}", response_model=DepositIntentStatusResponse)
    def get_deposit_intent(
        session_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> DepositIntentStatusResponse:
        status = DepositService(db, ctx).confirm_deposit_intent(session_id)
        return DepositIntentStatusResponse(**status.__dict__)

    @app.post("/deposits/intents/{session_id}/confirm", response_model=DepositIntentStatusResponse)
    def confirm_deposit_intent(
        session_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> DepositIntentStatusResponse:
        status = DepositService(db, ctx).confirm_deposit_intent(session_id, refresh=True)
        return DepositIntentStatusResponse(**status.__dict__)

    @app.get("/deposits/review", response_model=list[ReviewSession])
    def deposits_for_review(db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)) -> list[ReviewSession]:
        return [ReviewSession.model_validate(session) for session in DepositService(db, ctx).list_for_review()]

    @app.post("/deposits/onchain", response_model=TransactionResponse)
    def create_onchain_deposit(
        request: OnchainDepositRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> TransactionResponse:
        tx = DepositService(db, ctx).create_onchain_deposit(
            OnchainDepositParams(
                user_id=request.user_id,
                chain=request.chain,
                tx_id=request.tx_id,
                log_index=request.log_index,
                token_symbol=request.token_symbol.upper(),
                amount=request.amount,
                from_address=request.from_address,
                block_number=request.block_number,
            )
        )
        return TransactionResponse.model_validate(tx)

    @app.post("/deposits/payment", response_model=TransactionResponse)
    def create_payment_deposit(
        request: PaymentDepositRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> TransactionResponse:
        tx = DepositService(db, ctx).create_payment_deposit(
            request.user_id,
            request.amount,
            request.exchange_rate,
            request.reference,
            phone_number=request.phone_number,
            allocation={key: str(value) for key, value in request.allocation.items()} if request.allocation else None,
        )
        return TransactionResponse.model_validate(tx)

    @app.post("/deposits/payment/callback", response_model=TransactionResponse)
    def payment_callback(
        request: PaymentCallbackRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> TransactionResponse:
        tx = DepositService(db, ctx).handle_payment_callback(
            request.external_ref, request.amount, request.phone_or_account, request.status, request.receipt
        )
        return TransactionResponse.model_validate(tx)

    @app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
    def get_transaction(transaction_id: str, db: Session = Depends(get_db)) -> TransactionResponse:
        return TransactionResponse.model_validate(TransactionStore(db).require(transaction_id))

    @app.post("/swaps/quote", response_model=SwapQuoteResponse)
    def quote_swap(request: SwapRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)) -> SwapQuoteResponse:
        if not ctx.swap_provider.is_configured():
            raise HTTPException(status_code=503, detail=f"{ctx.swap_provider.get_provider_name()} is not configured")
        quote, to_amount = SwapService(db, ctx).quote(request.user_id, request.from_asset, request.to_asset, request.amount)
        return SwapQuoteResponse(
            provider=quote.provider,
            from_asset=request.from_asset,
            to_asset=request.to_asset,
            amount=request.amount,
            to_amount=to_amount,
            route=quote.route,
        )

    @app.post("/swaps", response_model=TransactionResponse)
    def execute_swap(request: SwapRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)) -> TransactionResponse:
        tx = SwapService(db, ctx).execute_swap(request.user_id, request.from_asset, request.to_asset, request.amount)
        return TransactionResponse.model_validate(tx)

    @app.post("/portfolio/{user_id}/rebalance", response_model=RebalanceResponse)
    def rebalance(
        user_id: str, request: RebalanceRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(get_ctx)
    ) -> RebalanceResponse:
        service = RebalanceService(db, ctx)
        target = {key: str(value) for key, value in request.target.items()}
        if request.dry_run:
            plan, group_id, created = service.plan(user_id, target), None, []
        else:
            plan, group_id, created = service.execute_rebalance(user_id, target)
        return RebalanceResponse(
            drift=plan.drift,
            needed=plan.needed,
            swaps=[PlannedSwapOut(**swap.__dict__) for swap in plan.swaps],
            group_id=group_id,
            transaction_ids=[tx.id for tx in created],
        )

    @app.get("/portfolio/{user_id}/rebalance/{group_id}", response_model=list[TransactionResponse])
    def rebalance_group(user_id: str, group_id: str, db: Session = Depends(get_db)) -> list[TransactionResponse]:
        swaps = TransactionStore(db).list_rebalance_group(user_id, group_id)
        if not swaps:
            raise HTTPException(status_code=404, detail=f"Rebalance group {group_id} not found")
        return [TransactionResponse.model_validate(tx) for tx in swaps]

    @app.get("/queues/metrics", response_model=QueueMetricsResponse)
    def queue_metrics(ctx: AppContext = Depends(get_ctx)) -> QueueMetricsResponse:
        return QueueMetricsResponse(
            accepting=ctx.queue.accepting,
            jobs=ctx.queue.counts(),
            monitor=ctx.monitor.snapshot(),
            recent_alerts=list(ctx.monitor.alerter.sent[-10:]),
        )

    @app.get("/queues/failed", response_model=list[FailedJobOut])
    def failed_jobs(task: str | None = None, ctx: AppContext = Depends(get_ctx)) -> list[FailedJobOut]:
        return [FailedJobOut.model_validate(job) for job in ctx.queue.list_failed(task)]

    @app.post("/queues/failed/{job_key}/retry", response_model=RetryResponse)
    def retry_failed_job(job_key: str, ctx: AppContext = Depends(get_ctx)) -> RetryResponse:
        requeued = ctx.queue.retry_failed(job_key)
        if not requeued:
            raise HTTPException(status_code=404, detail=f"No failed job {job_key}")
        return RetryResponse(job_key=job_key, requeued=True)


app = create_app()
