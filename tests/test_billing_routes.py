"""
Tests for the Stripe billing endpoints, with the store, gateway and audit log swapped out.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import PERIOD_END, encode, sign_payload, stripe_event
from guildmaster.dependencies import get_audit_service, get_guild_store, get_stripe_service
from guildmaster.exceptions import BillingProviderError
from guildmaster.main import app


@pytest.fixture
def client(store, gateway, audit):
    app.dependency_overrides[get_guild_store] = lambda: store
    app.dependency_overrides[get_stripe_service] = lambda: gateway
    app.dependency_overrides[get_audit_service] = lambda: audit
    yield TestClient(app)
    app.dependency_overrides.clear()


def post_event(client, event, secret="whsec_test_secret", header=None):
    payload = encode(event)
    headers = {"Content-Type": "application/json"}
    signature = header if header is not None else sign_payload(payload, secret=secret)
    if signature:
        headers["Stripe-Signature"] = signature
    return client.post("/api/stripe/webhook", content=payload, headers=headers)


class TestWebhook:

    def test_checkout_completed_upgrades_guild(self, client, store):
        response = post_event(client, stripe_event(
            "checkout.session.completed",
            {"id": "cs_1", "subscription": "sub_1", "metadata": {"guildId": "g1"}},
        ))

        assert response.status_code == 200
        assert response.content == b""
        doc = store.document("g1")
        assert doc["plan"] == "pro"
        assert doc["stripe_subscription_id"] == "sub_1"
        assert doc["stripe_price_id"] == "price_pro"
        assert doc["current_period_end"] == PERIOD_END
        assert doc["pro_trial_used"] is True
        assert "trial_ends_at" not in doc

    def test_invalid_signature_never_touches_state(self, client, store, gateway):
        before = store.document("g1")
        response = post_event(
            client,
            stripe_event("customer.subscription.deleted", {"id": "sub_1", "metadata": {"guildId": "g1"}}),
            secret="whsec_attacker",
        )

        assert response.status_code == 400
        assert store.document("g1") == before
        gateway.retrieve_subscription.assert_not_awaited()

    def test_missing_signature_header(self, client, store):
        before = store.document("g1")
        response = post_event(
            client,
            stripe_event("customer.subscription.deleted", {"id": "sub_1", "metadata": {"guildId": "g1"}}),
            header="",
        )
        assert response.status_code == 400
        assert store.document("g1") == before

    def test_missing_guild_reference(self, client, store):
        before = store.document("g1")
        response = post_event(client, stripe_event(
            "checkout.session.completed", {"id": "cs_1", "subscription": "sub_1"},
        ))

        assert response.status_code == 400
        assert "guildId" in response.json()["detail"]
        assert store.document("g1") == before

    def test_customer_without_guild_id_is_rejected(self, client, store):
        store._documents["g1"].update(
            plan="pro", stripe_customer_id="cus_1", stripe_subscription_id="sub_1", stripe_price_id="price_pro",
        )
        before = store.document("g1")

        response = post_event(client, stripe_event(
            "customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1", "status": "canceled", "metadata": {}},
        ))

        assert response.status_code == 400
        assert store.document("g1") == before

    def test_subscription_without_price_is_server_error(self, client, store, gateway, active_subscription):
        gateway.retrieve_subscription.return_value = active_subscription.model_copy(update={"price_id": None})
        before = store.document("g1")

        response = post_event(client, stripe_event(
            "checkout.session.completed",
            {"id": "cs_1", "subscription": "sub_1", "metadata": {"guildId": "g1"}},
        ))

        assert response.status_code == 500
        assert store.document("g1") == before

    def test_unknown_guild(self, client):
        response = post_event(client, stripe_event(
            "checkout.session.completed",
            {"id": "cs_1", "subscription": "sub_1", "metadata": {"guildId": "missing"}},
        ))
        assert response.status_code == 404

    def test_provider_failure_is_server_error(self, client, store, gateway):
        gateway.retrieve_subscription.side_effect = BillingProviderError("Stripe is down")
        before = store.document("g1")

        response = post_event(client, stripe_event(
            "checkout.session.completed",
            {"id": "cs_1", "subscription": "sub_1", "metadata": {"guildId": "g1"}},
        ))

        assert response.status_code == 500
        assert store.document("g1") == before

    def test_unhandled_event_is_acknowledged(self, client):
        response = post_event(client, stripe_event("payment_intent.created", {"id": "pi_1"}))
        assert response.status_code == 200


class TestCheckoutSession:

    def test_missing_fields(self, client):
        response = client.post("/api/stripe/create-checkout-session", json={"guildId": "g1", "userId": "owner"})
        assert response.status_code == 400

    def test_guild_not_found(self, client):
        response = client.post(
            "/api/stripe/create-checkout-session",
            json={"guildId": "missing", "userId": "owner", "priceId": "price_pro"},
        )
        assert response.status_code == 404

    def test_provisions_customer_once(self, client, store, gateway, audit):
        body = {"guildId": "g1", "userId": "owner", "priceId": "price_pro"}

        first = client.post("/api/stripe/create-checkout-session", json=body, headers={"Origin": "https://app.example"})
        second = client.post("/api/stripe/create-checkout-session", json=body)

        assert first.status_code == 200
        assert first.json() == {"sessionId": "cs_test_1"}
        assert second.status_code == 200
        gateway.create_customer.assert_awaited_once_with("g1")
        assert store.document("g1")["stripe_customer_id"] == "cus_new"
        assert audit.log_standalone.await_count == 1

        kwargs = gateway.create_checkout_session.await_args_list[0].kwargs
        assert kwargs["customer_id"] == "cus_new"
        assert kwargs["price_id"] == "price_pro"
        assert kwargs["success_url"] == "https://app.example/dashboard/billing?guildId=g1&success=true"
        assert kwargs["cancel_url"] == "https://app.example/dashboard/billing?guildId=g1&canceled=true"

    def test_member_with_billing_role_allowed(self, client):
        response = client.post(
            "/api/stripe/create-checkout-session",
            json={"guildId": "g1", "userId": "leader", "priceId": "price_pro"},
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("user_id", ["officer", "stranger"])
    def test_member_without_billing_permission_denied(self, client, gateway, user_id):
        response = client.post(
            "/api/stripe/create-checkout-session",
            json={"guildId": "g1", "userId": user_id, "priceId": "price_pro"},
        )
        assert response.status_code == 403
        gateway.create_customer.assert_not_awaited()

    def test_provider_error_message_is_surfaced(self, client, gateway):
        gateway.create_checkout_session.side_effect = BillingProviderError("No such price: 'price_x'")
        response = client.post(
            "/api/stripe/create-checkout-session",
            json={"guildId": "g1", "userId": "owner", "priceId": "price_x"},
        )
        assert response.status_code == 500
        assert "No such price" in response.json()["detail"]


class TestPortalSession:

    def test_missing_guild_id(self, client):
        assert client.post("/api/stripe/create-portal-session", json={}).status_code == 400

    def test_requires_customer(self, client):
        response = client.post("/api/stripe/create-portal-session", json={"guildId": "g1"})
        assert response.status_code == 400
        assert "customer" in response.json()["detail"]

    def test_returns_portal_url(self, client, store, gateway):
        store._documents["g1"]["stripe_customer_id"] = "cus_1"
        response = client.post("/api/stripe/create-portal-session", json={"guildId": "g1"})

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/p/session_1"}
        assert gateway.create_portal_session.await_args.kwargs["customer_id"] == "cus_1"

    def test_guild_not_found(self, client):
        assert client.post("/api/stripe/create-portal-session", json={"guildId": "missing"}).status_code == 404
