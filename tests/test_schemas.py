from datetime import datetime

import pytest
from pydantic import ValidationError

from models import TransactionType
from schemas import ChatRequest, QuickTransactionIn, SignupIn, TransactionIn


def base_form(**overrides) -> dict:
    data = dict(
        amount_cents=1500,
        description="  Lunch  ",
        date=datetime(2025, 3, 1, 12, 0),
        type=TransactionType.expense,
        category="   ",
    )
    data.update(overrides)
    return data


def test_transaction_input_is_normalized() -> None:
    data = TransactionIn(**base_form(installments=5))
    assert data.description == "Lunch"
    assert data.category is None
    # installments only make sense for credit purchases
    assert data.installments is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount_cents": 0},
        {"amount_cents": -100},
        {"description": "   "},
        {"description": "x" * 201},
        {"is_credit": True},
        {"is_credit": True, "installments": 25},
        {"is_credit": True, "installments": 0},
        {"is_credit": True, "installments": 3, "type": TransactionType.income},
    ],
)
def test_invalid_transaction_input_is_rejected(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        TransactionIn(**base_form(**overrides))


def test_quick_add_defaults_to_expense() -> None:
    data = QuickTransactionIn(amount_cents=300, description="Coffee")
    assert data.type == TransactionType.expense
    assert data.category is None


def test_signup_username_pattern() -> None:
    assert SignupIn(username="jane.doe", password="longenough").username == "jane.doe"
    with pytest.raises(ValidationError):
        SignupIn(username="jane doe", password="longenough")
    with pytest.raises(ValidationError):
        SignupIn(username="jane", password="short")


def test_chat_request_accepts_camel_case_summary() -> None:
    request = ChatRequest.model_validate(
        {
            "messages": [{"role": "user", "content": "Hi"}, {"role": "system", "content": "x"}],
            "transactions": [{"description": "Rent"}],
            "financialSummary": {"totalBalance": "10.00"},
        }
    )
    assert request.financial_summary == {"totalBalance": "10.00"}
    assert [m.role for m in request.messages] == ["user", "assistant"]


def test_chat_request_context_is_optional_but_typed() -> None:
    request = ChatRequest.model_validate({"messages": []})
    assert request.transactions is None
    assert request.financial_summary is None

    with pytest.raises(ValidationError):
        ChatRequest.model_validate({"messages": [], "transactions": "nope"})
    with pytest.raises(ValidationError):
        ChatRequest.model_validate({"messages": [], "financialSummary": [1, 2]})
