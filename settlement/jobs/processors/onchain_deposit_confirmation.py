import logging

from settlement.errors import NotFoundError, PollAgain, TerminalError
from settlement.jobs.queue import ClaimedJob
from settlement.services.deposit_sessions import AWAITING, RECEIVED, TERMINAL
from settlement.services.deposits import DepositService

logger = logging.getLogger(__name__)


def process(ctx, job: ClaimedJob) -> None:
    session_id = job.payload["session_id"]
    with ctx.session_factory() as db:
        service = DepositService(db, ctx)
        try:
            session = service.sessions.require(session_id)
        except NotFoundError as exc:
            raise TerminalError(str(exc)) from exc
        if session.status in TERMINAL:
            logger.info("Deposit session %s already %s", session_id, session.status)
            return

        client = ctx.chain_clients.get(session.chain)
        if session.status == AWAITING:
            latest = client.get_latest_block()
            events = client.get_transfer_events(
                session.token_address,
                session.deposit_address,
                session.created_at_block,
                latest,
                ctx.catalog.decimals(session.token_symbol),
            )
            match = service.find_match(session, events)
            if match is None:
                if ctx.clock() >= session.expires_at:
                    if service.expire_session(session_id):
                        logger.info("Deposit session %s expired without a transfer", session_id)
                    return
                raise PollAgain(f"no matching transfer up to block {latest}")
            if not service.sessions.bind_match(session_id, match, now=ctx.clock()):
                db.rollback()
                raise PollAgain("session changed while binding")
            db.commit()
            logger.info(
                "Deposit session %s matched %s:%s for %s", session_id, match.tx_id, match.log_index, match.amount
            )
            session = service.sessions.require(session_id)

        if session.status != RECEIVED:
            return
        required = ctx.settings.required_confirmations
        confirmations = client.get_confirmation_depth(session.matched_tx_id)
        service.sessions.record_confirmations(session_id, confirmations)
        db.commit()
        if confirmations < required:
            raise PollAgain(f"{confirmations}/{required} confirmations")
        outcome = service.settle_onchain_deposit(session_id)
        if outcome.race_lost:
            logger.warning("Deposit session %s left for review after losing its event", session_id)


def on_exhausted(ctx, job: ClaimedJob) -> None:
    session_id = job.payload["session_id"]
    with ctx.session_factory() as db:
        service = DepositService(db, ctx)
        session = service.sessions.get(session_id)
        if session is None or session.status in TERMINAL:
            return
        if session.status == AWAITING:
            service.expire_session(session_id)
            return
        if service.fail_session(session_id, "confirmation-timeout"):
            ctx.monitor.alert(
                "deposit_confirmation_timeout",
                f"Deposit session {session_id} never reached the required confirmations",
                session_id=session_id,
                tx_id=session.matched_tx_id,
            )
