"""Callback boundary: throttles, reconciles, logs once, and picks the redirect."""

from dataclasses import dataclass

from fleecapay.common.config import settings
from fleecapay.common.errors import SEVERITY, ErrorKind, Severity
from fleecapay.common.metrics import callback_outcomes_total, callback_requests_total, reconcile_latency_seconds
from fleecapay.services.reconciler.schemas import CallbackSession, Outcome
from fleecapay.services.reconciler.service import PaymentReconciler
from fleecapay.services.reconciler.stores import LogSink
from fleecapay.services.validation.rate_limit import RateLimiter, actor_identity


CALLBACK_ACTION = "callback"
LOG_MODULE = "fleeca"


@dataclass(frozen=True)
class CallbackResponse:
    """Where to send the customer and what to tell them."""

    redirect_url: str
    notice: str
    notice_level: str
    outcome: Outcome


def _log_event(outcome: Outcome) -> tuple[str, str]:
    """(event_type, status) for the one gateway-log entry of an outcome."""

    if outcome.is_paid:
        return "Payment", "success"
    severity = SEVERITY.get(outcome.reason, Severity.ERROR)
    if severity == Severity.SECURITY or outcome.reason == ErrorKind.RATE_LIMITED:
        return "Security", "error"
    if severity == Severity.INFO:
        return "Info", "success"
    return "Error", "error"


class CallbackEndpoint:
    def __init__(
        self,
        reconciler: PaymentReconciler,
        rate_limiter: RateLimiter,
        log_sink: LogSink,
        checkout_url: str | None = None,
        receipt_url_template: str | None = None,
        service_name: str | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.rate_limiter = rate_limiter
        self.log_sink = log_sink
        self.checkout_url = checkout_url or settings.checkout_url
        self.receipt_url_template = receipt_url_template or settings.receipt_url_template
        self.service_name = service_name or settings.service_name

    def handle(self, token: str, session: CallbackSession) -> CallbackResponse:
        """Process one inbound callback delivery."""

        callback_requests_total.labels(service=self.service_name).inc()
        if not token:
            return self._respond(
                Outcome.rejected(ErrorKind.MISSING_TOKEN, detail="Missing token in callback"),
                session,
            )

        actor = actor_identity(session.user_id, session.remote_addr)
        if not self.rate_limiter.allow(actor, CALLBACK_ACTION):
            return self._respond(
                Outcome.rejected(ErrorKind.RATE_LIMITED, detail="Rate limit exceeded for callbacks"),
                session,
            )
        return self._run(token, session)

    def reprocess(self, token: str, session: CallbackSession) -> CallbackResponse:
        """Administrator-triggered re-run; not subject to the customer rate limit."""

        return self._run(token, session)

    def _run(self, token: str, session: CallbackSession) -> CallbackResponse:
        with reconcile_latency_seconds.labels(service=self.service_name).time():
            outcome = self.reconciler.reconcile(token, session)
        return self._respond(outcome, session)

    def receipt_url(self, order_id: int) -> str:
        return self.receipt_url_template.format(order_id=order_id)

    def _respond(self, outcome: Outcome, session: CallbackSession) -> CallbackResponse:
        event_type, status = _log_event(outcome)
        context = {**outcome.context, "outcome": outcome.result}
        if outcome.reason is not None:
            context["reason"] = outcome.reason.value
            context["severity"] = SEVERITY.get(outcome.reason, Severity.ERROR).value
        if outcome.order is not None:
            context["order_id"] = outcome.order.id
            context["order_status"] = outcome.order.status
        self.log_sink.append(LOG_MODULE, event_type, outcome.detail, status, context, user_id=session.user_id)
        callback_outcomes_total.labels(
            service=self.service_name,
            outcome=outcome.result if outcome.is_paid else outcome.reason.value,
        ).inc()

        if outcome.is_paid:
            return CallbackResponse(self.receipt_url(outcome.order.id), outcome.user_message, "success", outcome)
        if outcome.reason == ErrorKind.ALREADY_PROCESSED and outcome.order is not None:
            return CallbackResponse(self.receipt_url(outcome.order.id), outcome.user_message, "info", outcome)
        return CallbackResponse(self.checkout_url, outcome.user_message, "error", outcome)
