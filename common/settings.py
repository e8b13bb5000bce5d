import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Payment gateway (hosted checkout)
    gateway_merchant_key: str = os.getenv("GATEWAY_MERCHANT_KEY", "test-merchant-key")
    gateway_salt: str = os.getenv("GATEWAY_SALT", "test-merchant-salt")
    gateway_url: str = os.getenv("GATEWAY_URL", "https://secure.payu.in/_payment")
    gateway_service_provider: str = os.getenv("GATEWAY_SERVICE_PROVIDER", "payu_paisa")

    # HTTP surface
    service_host: str = os.getenv("SERVICE_HOST", "0.0.0.0")
    service_port: int = int(os.getenv("SERVICE_PORT", "8010"))

    # Callbacks always land on the production host, whatever environment we run in
    callback_host: str = os.getenv("CALLBACK_HOST", "https://vasbazaar.webdekho.in")
    callback_path: str = os.getenv("CALLBACK_PATH", "/main/common/PayUCallbackScreen")

    default_product_info: str = os.getenv("DEFAULT_PRODUCT_INFO", "VasBazaar Services")
    default_payer_name: str = os.getenv("DEFAULT_PAYER_NAME", "Customer")
    default_payer_email: str = os.getenv("DEFAULT_PAYER_EMAIL", "customer@vasbazaar.com")

    # Recharge backend
    backend_base_url: str = os.getenv("BACKEND_BASE_URL", "https://apis.vasbazaar.com")
    recharge_endpoint: str = os.getenv("RECHARGE_ENDPOINT", "api/customer/plan_recharge/recharge")
    status_endpoint: str = os.getenv("STATUS_ENDPOINT", "api/customer/plan_recharge/check-status")
    transaction_endpoint: str = os.getenv("TRANSACTION_ENDPOINT", "api/customer/transaction/getById")
    payment_link_endpoint: str = os.getenv("PAYMENT_LINK_ENDPOINT", "pay")
    backend_timeout_seconds: float = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "20"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    pending_payload_key: str = os.getenv("PENDING_PAYLOAD_KEY", "pendingRechargePayload")
    last_outcome_key: str = os.getenv("LAST_OUTCOME_KEY", "lastPaymentOutcome")

    # Status polling
    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "30"))
    poll_extended_interval_seconds: float = float(os.getenv("POLL_EXTENDED_INTERVAL_SECONDS", "60"))
    poll_failure_escalation: int = int(os.getenv("POLL_FAILURE_ESCALATION", "3"))
    popup_check_interval_seconds: float = float(os.getenv("POPUP_CHECK_INTERVAL_SECONDS", "1"))

    @property
    def success_url(self) -> str:
        return f"{self.callback_host}{self.callback_path}?status=success"

    @property
    def failure_url(self) -> str:
        return f"{self.callback_host}{self.callback_path}?status=failure"

    @property
    def cancel_url(self) -> str:
        return f"{self.callback_host}{self.callback_path}?status=cancelled"

settings = Settings()
