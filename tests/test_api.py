import json
import re
from datetime import datetime

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import select

from chat import ChatProxy
from config import Settings
from database import Base
from fetch import FetchCache
from main import create_app
from models import Profile, Transaction, TransactionType

CSRF_RE = re.compile(r'name="csrf_token" value="([^"]+)"')


def make_app(**overrides):
    settings = Settings(
        database_url="sqlite:///:memory:",
        timezone="Europe/Berlin",
        secret_key="test-secret",
        scheduler_enabled=False,
        fetch_backoff_secs=0.0,
        **overrides,
    )
    app = create_app(settings)
    Base.metadata.create_all(app.state.engine)
    return app


def csrf_from(client: TestClient, path: str) -> str:
    response = client.get(path)
    assert response.status_code == 200
    match = CSRF_RE.search(response.text)
    assert match, f"no csrf token on {path}"
    return match.group(1)


def sign_up(client: TestClient, username: str = "alice") -> httpx.Response:
    token = csrf_from(client, "/signup")
    response = client.post(
        "/signup",
        data={"csrf_token": token, "username": username, "password": "correct horse"},
        follow_redirects=False,
    )
    assert response.status_code == 303
    return response


def test_pages_redirect_to_login_without_a_session() -> None:
    with TestClient(make_app()) as client:
        response = client.get("/", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login"

        api = client.get("/api/transactions")
        assert api.status_code == 401


def test_transaction_lifecycle_through_the_web_app() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        token = csrf_from(client, "/")

        quick = client.post(
            "/transactions/quick",
            data={"csrf_token": token, "amount": "4,50", "description": "Coffee", "category": "Food"},
            follow_redirects=False,
        )
        assert quick.status_code == 303

        credit = client.post(
            "/transactions",
            data={
                "csrf_token": token,
                "amount": "1200.00",
                "description": "Laptop",
                "date": "2025-03-01T10:00",
                "type": "expense",
                "category": "Tech",
                "is_credit": "on",
                "installments": "12",
            },
            follow_redirects=False,
        )
        assert credit.status_code == 303

        items = client.get("/api/transactions").json()["items"]
        # coffee, the laptop purchase and its first installment
        assert len(items) == 3
        laptop = next(i for i in items if i["description"] == "Laptop")
        assert laptop["amount_cents"] == 10000
        assert laptop["original_amount_cents"] == 120000
        assert laptop["remaining_installments"] == 11

        paid = client.post(
            f"/transactions/{laptop['id']}/pay-installment",
            data={"csrf_token": token},
            follow_redirects=False,
        )
        assert paid.status_code == 303

        items = client.get("/api/transactions", params={"revalidate": "1"}).json()["items"]
        assert len(items) == 4
        payment = next(i for i in items if i["description"] == "Installment Payment for: Laptop")
        assert payment["amount_cents"] == 10000
        assert payment["is_credit"] is False

        edit_page = client.get(f"/transactions/{laptop['id']}/edit")
        assert edit_page.status_code == 200
        assert 'value="1200.00"' in edit_page.text

        deleted = client.post(
            f"/transactions/{payment['id']}/delete",
            data={"csrf_token": token},
            follow_redirects=False,
        )
        assert deleted.status_code == 303
        assert len(client.get("/api/transactions").json()["items"]) == 3

        assert client.get("/reports").status_code == 200
        assert client.get("/transactions").status_code == 200


def test_invalid_input_and_missing_rows() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        token = csrf_from(client, "/")

        bad_amount = client.post(
            "/transactions/quick",
            data={"csrf_token": token, "amount": "abc", "description": "Coffee"},
        )
        assert bad_amount.status_code == 400

        bad_csrf = client.post(
            "/transactions/quick",
            data={"csrf_token": "forged", "amount": "1", "description": "Coffee"},
        )
        assert bad_csrf.status_code == 400

        income_credit = client.post(
            "/transactions",
            data={
                "csrf_token": token,
                "amount": "100",
                "description": "Salary",
                "type": "income",
                "is_credit": "on",
                "installments": "3",
            },
        )
        assert income_credit.status_code == 400

        missing = client.post("/transactions/999/delete", data={"csrf_token": token})
        assert missing.status_code == 404
        assert client.get("/transactions/999/edit").status_code == 404
        assert client.get("/api/transactions").json()["items"] == []


def test_paying_an_exhausted_credit_purchase_conflicts() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        token = csrf_from(client, "/")
        client.post(
            "/transactions",
            data={
                "csrf_token": token,
                "amount": "50",
                "description": "Headphones",
                "type": "expense",
                "is_credit": "on",
                "installments": "1",
            },
        )
        items = client.get("/api/transactions").json()["items"]
        purchase = next(i for i in items if i["is_credit"])
        assert purchase["remaining_installments"] == 0

        response = client.post(
            f"/transactions/{purchase['id']}/pay-installment",
            data={"csrf_token": token},
        )
        assert response.status_code == 409


def test_users_cannot_touch_each_others_transactions() -> None:
    app = make_app()
    with TestClient(app) as alice, TestClient(app) as bob:
        sign_up(alice, "alice")
        token = csrf_from(alice, "/")
        alice.post(
            "/transactions/quick",
            data={"csrf_token": token, "amount": "10", "description": "Private"},
        )
        alice_txn = alice.get("/api/transactions").json()["items"][0]

        sign_up(bob, "bob")
        bob_token = csrf_from(bob, "/")
        assert bob.get("/api/transactions").json()["items"] == []
        response = bob.post(
            f"/transactions/{alice_txn['id']}/delete", data={"csrf_token": bob_token}
        )
        assert response.status_code == 404
        # a csrf token minted for alice is useless to bob
        forged = bob.post(
            "/transactions/quick",
            data={"csrf_token": token, "amount": "1", "description": "x"},
        )
        assert forged.status_code == 400


def test_expired_access_token_is_refreshed_and_cookie_reissued() -> None:
    with TestClient(make_app()) as client:
        signup = sign_up(client)
        refresh = signup.cookies["refresh_token"]

        client.cookies.clear()
        client.cookies.set("access_token", "expired")
        client.cookies.set("refresh_token", refresh)
        response = client.get("/api/transactions")

        assert response.status_code == 200
        assert response.cookies.get("access_token") not in (None, "expired")

        client.cookies.clear()
        client.cookies.set("access_token", "expired")
        client.cookies.set("refresh_token", "tampered")
        assert client.get("/api/transactions").status_code == 401


def test_csv_export_and_reports_api() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        token = csrf_from(client, "/")
        client.post(
            "/transactions",
            data={
                "csrf_token": token,
                "amount": "12.50",
                "description": 'Book "Dune"',
                "date": "2025-03-01",
                "type": "expense",
            },
        )

        export = client.get("/transactions/export.csv")
        assert export.status_code == 200
        assert export.headers["content-type"].startswith("text/csv")
        assert re.search(
            r'filename="transactions_\d{4}-\d{2}-\d{2}\.csv"',
            export.headers["content-disposition"],
        )
        lines = export.text.splitlines()
        assert lines[0] == "Date,Description,Category,Type,Amount"
        assert lines[1] == '"2025-03-01","Book ""Dune""","Uncategorized","expense","12.50"'

        reports = client.get("/api/reports").json()
        assert len(reports["daily"]) == 30
        assert len(reports["trends"]["months"]) == 6
        assert reports["summary"]["total_expense_cents"] == 1250
        assert reports["summary"]["transaction_count"] == 1


def test_settings_update_profile() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        token = csrf_from(client, "/settings")
        response = client.post(
            "/settings",
            data={"csrf_token": token, "username": "alice", "full_name": "Alice A."},
        )
        assert response.status_code == 200
        assert "Profile saved." in response.text
        assert 'value="Alice A."' in response.text


def test_login_rejects_bad_credentials_and_accepts_good_ones() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        client.post("/logout")
        client.cookies.clear()

        token = csrf_from(client, "/login")
        bad = client.post(
            "/login",
            data={"csrf_token": token, "username": "alice", "password": "wrong password"},
        )
        assert bad.status_code == 400
        assert "Invalid username or password" in bad.text

        good = client.post(
            "/login",
            data={"csrf_token": token, "username": "ALICE", "password": "correct horse"},
            follow_redirects=False,
        )
        assert good.status_code == 303
        assert client.get("/", follow_redirects=False).status_code == 200


def test_chat_streams_ndjson_events_with_server_side_context() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        chunks = ["<think>look at rent", "</think>Rent is ", "your top cost."]
        lines = [
            "data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) for c in chunks
        ]
        lines.append("data: [DONE]")
        return httpx.Response(200, content="\n\n".join(lines).encode())

    app = make_app(llm_api_key="test-key")
    app.state.chat_proxy = ChatProxy(
        app.state.settings, transport=httpx.MockTransport(handler)
    )
    with TestClient(app) as client:
        sign_up(client)
        token = csrf_from(client, "/")
        client.post(
            "/transactions/quick",
            data={"csrf_token": token, "amount": "800", "description": "Rent", "category": "Housing"},
        )

        response = client.post(
            "/api/chat", json={"messages": [{"role": "user", "content": "Where does my money go?"}]}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = [json.loads(line) for line in response.text.splitlines() if line]
        thinking = "".join(e["text"] for e in events if e["type"] == "thinking")
        content = "".join(e["text"] for e in events if e["type"] == "content")
        assert thinking == "look at rent"
        assert content == "Rent is your top cost."

        system = captured["body"]["messages"][0]
        assert system["role"] == "system"
        assert '"description": "Rent"' in system["content"]
        assert "Top Category: Housing" in system["content"]

        bad = client.post("/api/chat", json={"messages": "hello"})
        assert bad.status_code == 400


def test_chat_without_api_key_is_a_server_error() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        response = client.post("/api/chat", json={"messages": [], "transactions": [], "financialSummary": {}})
        assert response.status_code == 500
        assert "not configured" in response.json()["error"]


def add_via_form(client: TestClient, token: str, **fields) -> None:
    data = {"csrf_token": token, "type": "expense"}
    data.update(fields)
    response = client.post("/transactions", data=data, follow_redirects=False)
    assert response.status_code == 303


def test_transaction_list_filters_and_sorts() -> None:
    with TestClient(make_app()) as client:
        sign_up(client)
        token = csrf_from(client, "/")
        add_via_form(client, token, amount="30", description="Groceries", date="2025-03-02", category="Food")
        add_via_form(client, token, amount="900", description="Rent", date="2025-03-01", category="Housing")
        add_via_form(client, token, amount="2500", description="Salary", date="2025-03-03", type="income")
        add_via_form(
            client,
            token,
            amount="600",
            description="Phone",
            date="2025-03-04",
            category="Tech",
            is_credit="on",
            installments="6",
        )

        def descriptions(**params):
            items = client.get("/api/transactions", params=params).json()["items"]
            return [i["description"] for i in items]

        assert descriptions(type="income") == ["Salary"]
        assert descriptions(credit="yes") == ["Phone"]
        assert "Phone" not in descriptions(credit="no")
        assert descriptions(category="food") == ["Groceries"]
        assert descriptions(category="all", q="rent") == ["Rent"]
        assert descriptions(type="expense", credit="no", sort="amount-desc") == [
            "Rent",
            "Installment Payment for: Phone",
            "Groceries",
        ]
        assert descriptions(sort="date-asc")[0] == "Rent"
        # unknown values fall back to no filter and newest first
        assert descriptions(type="bogus", sort="sideways") == descriptions()
        assert len(descriptions()) == 5

        page = client.get("/transactions", params={"type": "income", "sort": "amount-asc"})
        assert page.status_code == 200
        assert "Salary" in page.text
        assert "Groceries" not in page.text
        assert '<option value="amount-asc" selected>' in page.text


def test_revalidate_bypasses_the_dedup_window() -> None:
    app = make_app()
    with TestClient(app) as client:
        sign_up(client)
        token = csrf_from(client, "/")
        assert 'revalidate.js' in client.get("/").text
        client.post(
            "/transactions/quick",
            data={"csrf_token": token, "amount": "5", "description": "Coffee"},
        )
        assert len(client.get("/api/transactions").json()["items"]) == 1

        # a write made elsewhere, such as another device
        with app.state.session_factory() as session:
            profile = session.scalars(select(Profile)).one()
            session.add(
                Transaction(
                    user_id=profile.id,
                    amount_cents=700,
                    description="Lunch",
                    date=datetime(2025, 3, 1, 12, 0),
                    type=TransactionType.expense,
                    is_credit=False,
                )
            )
            session.commit()

        assert len(client.get("/api/transactions").json()["items"]) == 1
        fresh = client.get("/api/transactions", params={"revalidate": "1"}).json()["items"]
        assert [i["description"] for i in fresh] == ["Coffee", "Lunch"]


def test_pages_render_with_the_error_banner_on_store_failure() -> None:
    app = make_app()
    with TestClient(app) as client:
        sign_up(client)
        for path in ("/", "/transactions", "/reports", "/settings"):
            assert client.get(path).status_code == 200

        Base.metadata.tables["transactions"].drop(app.state.engine)
        app.state.fetch_cache = FetchCache()
        page = client.get("/reports")
        assert page.status_code == 503
        assert "retry" in page.text.lower()
        assert client.get("/api/transactions").status_code == 503
