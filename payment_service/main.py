"""
Payment Service
HTTP surface for gateway signing, callbacks, recharge submission, status
polling and the embedded browser bridge.
"""
import json
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import requests
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel, Field

from common.error_handling import add_error_handlers
from common.redis_client import RedisClient
from common.schemas import NavigationDecision, PaymentRequest, PaymentType
from common.settings import Settings, settings as default_settings
from common.tracing import payment_tracer, tracing_middleware

from payment_service.backend_client import BackendClient, SessionHolder
from payment_service.deeplink import DeepLinkInterceptor, Launcher, bridge_script
from payment_service.orchestrator import PaymentOrchestrator, RechargeContext, merge_callback_params
from payment_service.pending_store import PendingPayloadStore
from payment_service.poller import StatusPoller
from payment_service.popup_monitor import PopupMonitor
from payment_service.signer import RequestSigner, build_autosubmit_html
from payment_service.state_machine import TransactionRegistry
from payment_service.verifier import CallbackVerifier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

class GatewayPaymentIn(BaseModel):
    amount: Decimal = Field(allow_inf_nan=True)
    product_info: str = ""
    payer_name: str = ""
    payer_email: str = ""
    payer_phone: str = ""
    transaction_id: Optional[str] = None
    extension_fields: List[str] = Field(default_factory=list, max_length=5)
    context: Optional[RechargeContext] = None

    def to_request(self) -> PaymentRequest:
        return PaymentRequest(**self.model_dump(exclude={"context"}))

class RechargeIn(BaseModel):
    payment_type: PaymentType
    amount: Decimal = Field(allow_inf_nan=True)
    context: RechargeContext = Field(default_factory=RechargeContext)

class PopupClosedIn(BaseModel):
    user_confirmed: bool = False

class NavigationIn(BaseModel):
    url: str

class BridgeMessageIn(BaseModel):
    message: str

class ObserveIn(BaseModel):
    transaction_id: str
    url: str

def create_app(
    app_settings: Optional[Settings] = None,
    redis_client: Optional[RedisClient] = None,
    http: Optional[requests.Session] = None,
    launcher: Optional[Launcher] = None,
) -> FastAPI:
    cfg = app_settings or default_settings

    session = SessionHolder()
    store = PendingPayloadStore(redis_client or RedisClient(cfg.redis_url),
                                cfg.pending_payload_key, cfg.last_outcome_key)
    registry = TransactionRegistry()
    backend = BackendClient.from_settings(cfg, session, http=http)
    poller = StatusPoller(
        backend, store, registry,
        interval=cfg.poll_interval_seconds,
        extended_interval=cfg.poll_extended_interval_seconds,
        failure_escalation=cfg.poll_failure_escalation,
    )
    interceptor = DeepLinkInterceptor(launcher=launcher)
    orchestrator = PaymentOrchestrator(
        signer=RequestSigner.from_settings(cfg),
        verifier=CallbackVerifier(cfg.gateway_merchant_key),
        store=store,
        registry=registry,
        backend=backend,
        poller=poller,
        popup_monitor=PopupMonitor(cfg.popup_check_interval_seconds),
        interceptor=interceptor,
        secret=cfg.gateway_salt,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Payment service starting")
        yield
        await orchestrator.shutdown()
        logger.info("Payment service stopped")

    app = FastAPI(title="Payment Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.session = session
    app.state.orchestrator = orchestrator
    app.state.poller = poller
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, payment_tracer)

    async def bind_session(access_token: Optional[str] = Header(None, convert_underscores=False)):
        if access_token:
            session.set(access_token)
        return session

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "redis": store.redis.ping(),
            "backend_circuit": backend.circuit_breaker.get_state()["state"],
            "poller_running": poller.running,
        }

    @app.post("/payments/gateway")
    async def start_gateway_payment(body: GatewayPaymentIn):
        signed = await orchestrator.start_gateway_payment(body.to_request(), body.context)
        return {
            "transaction_id": signed.txnid,
            "gateway_url": cfg.gateway_url,
            "fields": signed.form_fields(),
        }

    @app.post("/payments/gateway/form", response_class=HTMLResponse)
    async def gateway_form(body: GatewayPaymentIn):
        signed = await orchestrator.start_gateway_payment(body.to_request(), body.context)
        return HTMLResponse(build_autosubmit_html(signed, cfg.gateway_url))

    @app.post("/payments/recharge")
    async def submit_recharge(body: RechargeIn, _session: SessionHolder = Depends(bind_session)):
        return await orchestrator.submit_recharge(body.payment_type, body.amount, body.context)

    @app.api_route("/payments/callback", methods=["GET", "POST"])
    async def gateway_callback(request: Request):
        posted: Dict[str, Any] = {}
        if request.method == "POST":
            raw = (await request.body()).decode("utf-8", errors="replace")
            if raw:
                if "json" in request.headers.get("content-type", ""):
                    try:
                        loaded = json.loads(raw)
                    except ValueError:
                        loaded = None
                    posted = loaded if isinstance(loaded, dict) else {}
                else:
                    posted = dict(parse_qsl(raw, keep_blank_values=True))
        params = merge_callback_params(posted, request.url.query)
        return await orchestrator.handle_callback(params)

    @app.get("/transactions/{transaction_id}")
    async def get_transaction(transaction_id: str):
        return orchestrator.snapshot(transaction_id)

    @app.post("/transactions/{transaction_id}/check")
    async def check_transaction(transaction_id: str, _session: SessionHolder = Depends(bind_session)):
        snapshot = await orchestrator.check_now(transaction_id)
        notice = poller.notices.get(transaction_id)
        return {
            "snapshot": snapshot,
            "notice": notice.__dict__ if notice else None,
            "next_check_in": poller.countdown(transaction_id),
        }

    @app.post("/transactions/{transaction_id}/popup")
    async def watch_popup(transaction_id: str):
        orchestrator.watch_popup(transaction_id)
        return orchestrator.snapshot(transaction_id)

    @app.post("/transactions/{transaction_id}/popup-closed")
    async def popup_closed(transaction_id: str, body: PopupClosedIn = PopupClosedIn(),
                           _session: SessionHolder = Depends(bind_session)):
        return await orchestrator.handle_popup_closed(transaction_id, body.user_confirmed)

    @app.post("/bridge/navigation", response_model=NavigationDecision)
    async def bridge_navigation(body: NavigationIn):
        return interceptor.should_allow_navigation(body.url)

    @app.post("/bridge/message")
    async def bridge_message(body: BridgeMessageIn):
        return {"action": interceptor.handle_message(body.message)}

    @app.post("/bridge/observe")
    async def bridge_observe(body: ObserveIn):
        hint = await orchestrator.handle_navigation(body.transaction_id, body.url)
        machine = registry.get(body.transaction_id)
        return {"hint": hint, "snapshot": machine.snapshot() if machine else None}

    @app.get("/bridge/script")
    async def get_bridge_script():
        return Response(content=bridge_script(), media_type="application/javascript")

    @app.get("/outcome/last")
    async def last_outcome():
        outcome = orchestrator.last_outcome()
        if outcome is None:
            raise HTTPException(404, "No resolved payment yet")
        return outcome

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=default_settings.service_host, port=default_settings.service_port)
