import hmac
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from attribution_store import record_click
from commission_ledger import apply_payment_event, release_held
from config import Settings, get_settings
from conversion_matcher import register_member
from errors import LedgerError, NotFoundError, SignatureError, ValidationError
from fraud_engine import FraudAssessment
from identity_hasher import VisitorIdentity, client_ip, hash_identity
from logging_config import setup_logging
from models import HELD, Commission, Member, Notification
from outbox import drain_outbox, http_sender
from reconciliation import run_reconciliation
from stats_cache import StatsCache
from storage import open_store
from webhook import decode_event, verify_signature


logger = logging.getLogger(__name__)


# ---------
# pydantic models (requests)
# ---------

class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    creator_id: int = Field(..., alias="creatorId", description="Tenant the member signs up with")
    user_id: str = Field(..., alias="userId", min_length=1, description="External account id")
    membership_id: str = Field(..., alias="membershipId", min_length=1, description="External membership id")
    name: str = Field("", description="Display name, used as referral code prefix")


class ReconcileRequest(BaseModel):
    fix: bool = Field(False, description="Rewrite drifted counters instead of only reporting")


# ---------
# serialization helpers
# ---------

def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def _member_out(member: Member) -> Dict[str, Any]:
    return {
        "id": member.id,
        "creator_id": member.creator_id,
        "user_id": member.user_id,
        "membership_id": member.membership_id,
        "referral_code": member.referral_code,
        "referred_by": member.referred_by,
        "member_origin": member.member_origin,
        "created_at": member.created_at.isoformat(),
    }


def _stats_out(member: Member) -> Dict[str, Any]:
    return {
        "member_id": member.id,
        "referral_code": member.referral_code,
        "total_referred": member.total_referred,
        "monthly_referred": member.monthly_referred,
        "lifetime_earnings": _money(member.lifetime_earnings),
        "monthly_earnings": _money(member.monthly_earnings),
    }


def _commission_out(commission: Commission) -> Dict[str, Any]:
    return {
        "id": commission.id,
        "external_payment_id": commission.external_payment_id,
        "sale_amount": _money(commission.sale_amount),
        "member_share": _money(commission.member_share),
        "creator_share": _money(commission.creator_share),
        "platform_share": _money(commission.platform_share),
        "status": commission.status,
        "member_id": commission.member_id,
        "referee_id": commission.referee_id,
        "creator_id": commission.creator_id,
        "fraud_score": commission.fraud_score,
        "fraud_reasons": list(commission.fraud_reasons),
        "flagged_for_review": commission.flagged_for_review,
        "payment_confirmed": commission.payment_confirmed,
        "reversal_reason": commission.reversal_reason,
        "created_at": commission.created_at.isoformat(),
        "paid_at": commission.paid_at.isoformat() if commission.paid_at else None,
    }


def _fraud_out(assessment: Optional[FraudAssessment]) -> Optional[Dict[str, Any]]:
    if assessment is None:
        return None
    return {
        "score": assessment.score,
        "decision": assessment.decision,
        "reasons": list(assessment.reasons),
    }


_STATUS_BY_ERROR = (
    (SignatureError, 401),
    (NotFoundError, 404),
    (ValidationError, 400),
)


def _http_error(exc: LedgerError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _request_identity(request: Request, settings: Settings) -> VisitorIdentity:
    peer = request.client.host if request.client else None
    ip = client_ip(request.headers, peer)
    return hash_identity(request.headers.get("user-agent"), ip, settings.identity_salt)


# ---------
# app factory
# ---------

def create_app(
    store=None,
    settings: Optional[Settings] = None,
    sender: Optional[Callable[[Notification], None]] = None,
) -> FastAPI:
    """
    build the http surface around an explicit storage handle.
    store defaults to whatever the settings point at; connect/disconnect
    follow the app lifespan. sender delivers outbox rows and defaults to
    posting them to settings.notification_url.
    """
    settings = settings or get_settings()
    store = store if store is not None else open_store(settings)
    cache = StatsCache(ttl_seconds=settings.stats_cache_ttl_seconds)
    if sender is None and settings.notification_url:
        sender = http_sender(
            settings.notification_url,
            secret=settings.webhook_secret,
            timeout=settings.notification_timeout_seconds,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        store.connect()
        logger.info("affiliate ledger started (%s storage)", settings.storage_backend)
        try:
            yield
        finally:
            store.disconnect()
            logger.info("affiliate ledger stopped")

    app = FastAPI(title="Affiliate Ledger", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.settings = settings
    app.state.stats_cache = cache

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
        if settings.admin_token is None:
            return
        if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_token):
            logger.warning("[SECURITY] admin endpoint called with bad or missing token")
            raise HTTPException(status_code=401, detail="Invalid admin token")

    # ---------
    # endpoints
    # ---------

    @app.get("/r/{referral_code}")
    def referral_redirect(referral_code: str, request: Request):
        """
        referral link entry point.
        records the click, drops the ref cookie and sends the visitor on to
        the creator's product. bad or unknown codes quietly go to the fallback.
        """
        identity = _request_identity(request, settings)
        user_agent = request.headers.get("user-agent")

        try:
            with store.transaction() as tx:
                click = record_click(
                    tx,
                    referral_code,
                    identity.fingerprint,
                    identity.ip_hash,
                    user_agent,
                    window_days=settings.attribution_window_days,
                )
                referrer = tx.get_member(click.referrer_id)
                creator = tx.get_creator(referrer.creator_id)
        except (ValidationError, NotFoundError) as e:
            logger.info("referral link not followed: %s", e)
            return RedirectResponse(settings.fallback_redirect_url, status_code=302)
        except Exception:
            logger.exception("failed to record click for %s", referral_code)
            return RedirectResponse(settings.fallback_redirect_url, status_code=302)

        response = RedirectResponse(creator.product_url, status_code=302)
        response.set_cookie(
            settings.referral_cookie_name,
            referral_code,
            max_age=settings.attribution_window_days * 24 * 60 * 60,
            httponly=True,
            samesite="lax",
        )
        return response

    @app.post("/api/members/signup")
    def member_signup(payload: SignupRequest, request: Request):
        """
        create the member for a new account and resolve its referrer
        (ref cookie first, then fingerprint / ip).
        """
        identity = _request_identity(request, settings)
        cookie_code = request.cookies.get(settings.referral_cookie_name)

        try:
            result = register_member(
                store,
                creator_id=payload.creator_id,
                user_id=payload.user_id,
                membership_id=payload.membership_id,
                name=payload.name,
                identity=identity,
                cookie_code=cookie_code,
                settings=settings,
            )
        except LedgerError as e:
            raise _http_error(e)
        except Exception:
            logger.exception("signup failed for membership %s", payload.membership_id)
            raise HTTPException(status_code=500, detail="Internal server error")

        cache.invalidate(result.referrer_id)

        return {
            "created": result.created,
            "origin": result.origin,
            "matched_via": result.matched_via,
            "member": _member_out(result.member),
            "fraud": _fraud_out(result.fraud),
        }

    @app.post("/api/webhooks/payment")
    async def payment_webhook(
        request: Request,
        x_webhook_signature: Optional[str] = Header(None),
    ):
        """
        payment processor webhook.
        signature is checked on the raw body before anything is decoded;
        returns applied / duplicate / organic / updated with the commission.
        """
        body = await request.body()

        try:
            verify_signature(body, x_webhook_signature, settings.webhook_secret)
            event = decode_event(body, max_age_seconds=settings.webhook_max_age_seconds)
            result = await run_in_threadpool(apply_payment_event, store, event, None, settings)
        except LedgerError as e:
            raise _http_error(e)
        except Exception:
            logger.exception("payment webhook processing failed")
            raise HTTPException(status_code=500, detail="Internal server error")

        if result.commission is not None:
            cache.invalidate(result.commission.member_id)

        return {
            "status": result.status,
            "commission": _commission_out(result.commission) if result.commission else None,
        }

    @app.get("/api/members/{member_id}/stats")
    def member_stats(member_id: int):
        """cached aggregate counters for one member."""
        cached = cache.get(member_id)
        if cached is not None:
            return cached

        with store.transaction() as tx:
            member = tx.get_member(member_id)
        if member is None:
            raise HTTPException(status_code=404, detail=f"Member {member_id} not found")

        stats = _stats_out(member)
        cache.set(member_id, stats)
        return stats

    @app.get("/api/members/{member_id}/commissions")
    def member_commissions(
        member_id: int,
        limit: int = Query(50, ge=1, le=500, description="Max commissions to return"),
    ):
        """commission history for the member as earner, newest first."""
        with store.transaction() as tx:
            member = tx.get_member(member_id)
            if member is None:
                raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
            commissions = tx.list_commissions(member_id=member_id, limit=limit)

        return {
            "member_id": member_id,
            "commissions": [_commission_out(c) for c in commissions],
        }

    @app.get("/api/creators/{creator_id}/fraud-flags")
    def creator_fraud_flags(creator_id: int):
        """held and review-flagged commissions for a tenant."""
        with store.transaction() as tx:
            if tx.get_creator(creator_id) is None:
                raise HTTPException(status_code=404, detail=f"Creator {creator_id} not found")
            held = tx.list_commissions(creator_id=creator_id, statuses=[HELD])
            flagged = tx.list_commissions(creator_id=creator_id, flagged_only=True)

        by_id = {c.id: c for c in held + flagged}
        rows = sorted(by_id.values(), key=lambda c: (c.created_at, c.id), reverse=True)
        return {
            "creator_id": creator_id,
            "flags": [_commission_out(c) for c in rows],
        }

    @app.post("/api/admin/reconcile", dependencies=[Depends(require_admin)])
    def admin_reconcile(payload: ReconcileRequest):
        """recompute cached counters from the ledger; fix=true rewrites drift."""
        try:
            report = run_reconciliation(store, fix=payload.fix)
        except Exception:
            logger.exception("reconciliation run failed")
            raise HTTPException(status_code=500, detail="Internal server error")

        cache.invalidate(*report.fixed_member_ids)
        return report.as_dict()

    @app.post("/api/admin/commissions/{commission_id}/release", dependencies=[Depends(require_admin)])
    def admin_release(commission_id: int):
        """release a held commission after review."""
        try:
            commission = release_held(store, commission_id)
        except LedgerError as e:
            raise _http_error(e)
        except Exception:
            logger.exception("release of commission %s failed", commission_id)
            raise HTTPException(status_code=500, detail="Internal server error")

        cache.invalidate(commission.member_id)
        return _commission_out(commission)

    @app.post("/api/admin/outbox/drain", dependencies=[Depends(require_admin)])
    def admin_drain_outbox():
        """deliver pending notifications; meant to be hit by a scheduler."""
        if sender is None:
            raise HTTPException(status_code=503, detail="Notification delivery is not configured")

        try:
            sent = drain_outbox(store, sender, limit=settings.outbox_drain_limit)
        except Exception:
            logger.exception("outbox drain failed")
            raise HTTPException(status_code=500, detail="Internal server error")

        with store.transaction() as tx:
            remaining = len(tx.pending_notifications(settings.outbox_drain_limit))
        return {"sent": sent, "pending": remaining}

    return app


app = create_app()
