# app/x402/actions.py
"""
Catalog of pay-per-request actions.

Each action fixes how much it costs, who gets paid, which params it takes and
what the caller receives once the payment is verified. Params are a tagged
union keyed by action name: every action has its own schema and unknown or
missing fields are rejected.

- kol-score: no params, pays the merchant X402_PRICE
- reactive-stop-orders: {symbol, takeProfit, stopLoss}, pays the reactive agent
- transfer-intent: {recipient, amount, tokenAddress?}, caller-chosen payment
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from app.core.config import settings
from app.x402.errors import InvalidInput
from app.x402.models import PaymentRequest

logger = logging.getLogger(__name__)

KOL_SCORE = "kol-score"
REACTIVE_STOP_ORDERS = "reactive-stop-orders"
TRANSFER_INTENT = "transfer-intent"


class NoParams(BaseModel):
    class Config:
        extra = "forbid"


class ReactiveStopOrderParams(BaseModel):
    symbol: str = Field(..., min_length=1, description="Ticker symbol, upper-cased.")
    takeProfit: float = Field(..., gt=0)
    stopLoss: float = Field(..., gt=0)

    class Config:
        extra = "forbid"

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        symbol = value.strip().upper()
        if not symbol:
            raise ValueError("symbol must not be blank")
        return symbol


class TransferIntentParams(BaseModel):
    recipient: str = Field(..., min_length=1)
    amount: str = Field(..., min_length=1, description="Decimal string.")
    tokenAddress: Optional[str] = None

    class Config:
        extra = "forbid"
        coerce_numbers_to_str = True
        str_strip_whitespace = True


@dataclass(frozen=True)
class ActionSpec:
    """How one action is priced, paid and unlocked."""
    name: str
    params_model: Type[BaseModel]
    summary: str
    default_amount: Callable[[], str]
    default_recipient: Callable[[], str]
    input_schema: Dict[str, str]
    build_result: Callable[[PaymentRequest], Dict[str, Any]]

    def parse_params(self, raw: Optional[Dict[str, Any]]) -> BaseModel:
        """Validate raw params against this action's schema."""
        try:
            return self.params_model.model_validate(raw or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'actionParams'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidInput(
                f"Invalid params for {self.name}: {problems}", code="invalid_action_params"
            ) from e


def _kol_score_result(request: PaymentRequest) -> Dict[str, Any]:
    return {
        "summary": "KOL score report unlocked by x402 payment",
        "topKOLs": [
            {"handle": "@alpha_kol", "score": 91},
            {"handle": "@beta_growth", "score": 88},
            {"handle": "@gamma_builder", "score": 84},
        ],
    }


def _reactive_result(request: PaymentRequest) -> Dict[str, Any]:
    params = request.actionParams or {}
    return {
        "summary": "Reactive contracts stop-orders signal unlocked by x402 payment",
        "orderPlan": {
            "symbol": params.get("symbol", "-"),
            "takeProfit": params.get("takeProfit", "-"),
            "stopLoss": params.get("stopLoss", "-"),
            "provider": "Reactive Contracts",
        },
    }


def _transfer_intent_result(request: PaymentRequest) -> Dict[str, Any]:
    return {
        "summary": "Transfer intent unlocked by x402 proof verification",
        "transfer": {
            "recipient": request.recipient,
            "amount": request.amount,
            "tokenAddress": request.tokenAddress,
        },
    }


ACTIONS: Dict[str, ActionSpec] = {
    KOL_SCORE: ActionSpec(
        name=KOL_SCORE,
        params_model=NoParams,
        summary="KOL score report",
        default_amount=lambda: settings.X402_PRICE,
        default_recipient=lambda: settings.X402_MERCHANT_ADDRESS,
        input_schema={"query": "string"},
        build_result=_kol_score_result,
    ),
    REACTIVE_STOP_ORDERS: ActionSpec(
        name=REACTIVE_STOP_ORDERS,
        params_model=ReactiveStopOrderParams,
        summary="Reactive contracts stop-orders signal",
        default_amount=lambda: settings.X402_REACTIVE_PRICE,
        default_recipient=lambda: settings.X402_REACTIVE_RECIPIENT,
        input_schema={"symbol": "string", "takeProfit": "number > 0", "stopLoss": "number > 0"},
        build_result=_reactive_result,
    ),
    TRANSFER_INTENT: ActionSpec(
        name=TRANSFER_INTENT,
        params_model=TransferIntentParams,
        summary="Transfer intent",
        default_amount=lambda: "",
        default_recipient=lambda: "",
        input_schema={"recipient": "address", "amount": "decimal string > 0", "tokenAddress": "address (optional)"},
        build_result=_transfer_intent_result,
    ),
}


def get_action_spec(action: Optional[str]) -> ActionSpec:
    """
    Look up an action by name (case-insensitive, defaults to kol-score).

    Raises:
        InvalidInput: If the action is not in the catalog
    """
    name = (action or KOL_SCORE).strip().lower()
    spec = ACTIONS.get(name)
    if spec is None:
        raise InvalidInput(f"Unsupported action: {name}", code="unsupported_action")
    return spec


def build_capabilities() -> Dict[str, Any]:
    """Machine-readable description of the actions this gateway sells."""
    return {
        "protocol": "a2a-mvp-v0",
        "payment": {
            "standard": "x402",
            "flow": "402 -> on-chain payment -> proof verify -> 200",
            "settlementToken": settings.X402_SETTLEMENT_TOKEN,
            "network": settings.X402_NETWORK,
        },
        "actions": [
            {
                "id": spec.name,
                "summary": spec.summary,
                "input": spec.input_schema,
                "price": spec.default_amount() or None,
                "recipient": spec.default_recipient() or None,
            }
            for spec in ACTIONS.values()
        ],
    }
