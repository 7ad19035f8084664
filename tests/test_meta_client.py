from unittest.mock import patch

import pytest
import requests

from adlab.config import MetaSettings
from adlab.infrastructure.error_handling import (
    RemotePolicyError,
    RemoteTransientError,
    ValidationError,
)
from adlab.integrations.meta_client import AccountAuth, ClientConfig, MetaClient, MetaClientFactory
from adlab.models import Owner


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text
        self.content = b""

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


def graph_error(code, message="nope", **extra):
    err = {"message": message, "code": code}
    err.update(extra)
    return {"error": err}


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return MetaClient(
        AccountAuth(account_id="123", access_token="tok", page_id="page1"),
        ClientConfig(timeout_sec=7, retry_max=2, backoff_base=0.01),
        sleeper=sleeps.append,
    )


class TestWrites:
    def test_adset_budget_in_minor_units(self, client):
        with patch("adlab.integrations.meta_client.requests.post", return_value=FakeResponse(body={"id": "as1"})) as post:
            out = client.create_adset(
                "cmp1", "Spring - Ad Set", 4.0,
                targeting={"geo_locations": {"countries": ["US"]}}, optimization_goal="LINK_CLICKS",
            )
        assert out == "as1"
        [call] = post.call_args_list
        assert call.args[0] == "https://graph.facebook.com/v19.0/act_123/adsets"
        payload = call.kwargs["json"]
        assert payload["daily_budget"] == 400
        assert payload["status"] == "PAUSED"
        assert payload["access_token"] == "tok"
        assert call.kwargs["timeout"] == 7

    def test_everything_is_created_paused(self, client):
        with patch("adlab.integrations.meta_client.requests.post", return_value=FakeResponse(body={"id": "x"})) as post:
            client.create_campaign("[AB] Spring", "OUTCOME_TRAFFIC")
            client.create_ad("as1", "Spring - V1", "cr1")
        assert [c.kwargs["json"]["status"] for c in post.call_args_list] == ["PAUSED", "PAUSED"]

    def test_creative_carries_call_to_action(self, client):
        with patch("adlab.integrations.meta_client.requests.post", return_value=FakeResponse(body={"id": "cr1"})) as post:
            client.create_ad_creative(
                "Spring - V1", headline="H", body="B", link_url="https://x.test", cta="SHOP_NOW",
                image_url="https://cdn.test/a.png",
            )
        link_data = post.call_args.kwargs["json"]["object_story_spec"]["link_data"]
        assert link_data["call_to_action"]["type"] == "SHOP_NOW"
        assert link_data["picture"] == "https://cdn.test/a.png"

    def test_missing_id_is_a_policy_error(self, client):
        with patch("adlab.integrations.meta_client.requests.post", return_value=FakeResponse(body={"success": True})):
            with pytest.raises(RemotePolicyError):
                client.create_campaign("x", "OUTCOME_TRAFFIC")


class TestRetries:
    def test_server_error_is_retried(self, client, sleeps):
        responses = [FakeResponse(500, graph_error(2, "Service temporarily unavailable")), FakeResponse(body={"id": "c1"})]
        with patch("adlab.integrations.meta_client.requests.post", side_effect=responses) as post:
            assert client.create_campaign("x", "OUTCOME_TRAFFIC") == "c1"
        assert post.call_count == 2
        assert len(sleeps) == 1

    def test_policy_error_is_not_retried(self, client, sleeps):
        with patch(
            "adlab.integrations.meta_client.requests.post",
            return_value=FakeResponse(400, graph_error(100, "Invalid parameter", error_user_msg="Budget too low")),
        ) as post:
            with pytest.raises(RemotePolicyError) as info:
                client.create_campaign("x", "OUTCOME_TRAFFIC")
        assert post.call_count == 1
        assert sleeps == []
        assert info.value.code == 100
        assert "Budget too low" in str(info.value)

    def test_throttling_code_is_transient(self, client):
        with patch("adlab.integrations.meta_client.requests.post", return_value=FakeResponse(400, graph_error(17))) as post:
            with pytest.raises(RemoteTransientError):
                client.create_campaign("x", "OUTCOME_TRAFFIC")
        assert post.call_count == 3

    def test_timeouts_end_transient(self, client, sleeps):
        with patch("adlab.integrations.meta_client.requests.post", side_effect=requests.Timeout("slow")) as post:
            with pytest.raises(RemoteTransientError):
                client.create_campaign("x", "OUTCOME_TRAFFIC")
        assert post.call_count == 3
        assert len(sleeps) == 2

    def test_expired_token(self, client):
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(400, graph_error(190))):
            with pytest.raises(RemotePolicyError) as info:
                client.get_insights("cmp1")
        assert info.value.credential_expired


class TestInsights:
    def test_decodes_first_row(self, client):
        body = {"data": [{"impressions": "1000", "clicks": "25", "spend": "12.34"}]}
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(body=body)) as get:
            snap = client.get_insights("cmp1")
        assert (snap.impressions, snap.clicks, snap.spend) == (1000, 25, 12.34)
        assert get.call_args.args[0] == "https://graph.facebook.com/v19.0/cmp1/insights"
        assert get.call_args.kwargs["params"]["date_preset"] == "today"

    def test_empty_is_none(self, client):
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(body={"data": []})):
            assert client.get_insights("cmp1") is None

    @pytest.mark.parametrize("body", [{"data": "abc"}, {"rows": []}, {"data": [{"impressions": "x", "clicks": "1", "spend": "1"}]}])
    def test_malformed_is_rejected(self, client, body):
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(body=body)):
            with pytest.raises(RemotePolicyError):
                client.get_insights("cmp1")


class TestDryRunAndGuards:
    def test_dry_run_never_calls_the_network(self):
        c = MetaClient(AccountAuth(account_id="act_9", access_token="t", page_id="p"), dry_run=True)
        with patch("adlab.integrations.meta_client.requests.post") as post, \
                patch("adlab.integrations.meta_client.requests.get") as get, \
                patch("adlab.integrations.meta_client.requests.delete") as delete:
            cid = c.create_campaign("x", "OUTCOME_TRAFFIC")
            assert cid.startswith("CP_")
            assert cid == c.create_campaign("x", "OUTCOME_TRAFFIC")
            c.create_adset(cid, "x", 2.0, targeting={}, optimization_goal="LINK_CLICKS")
            c.update_status(cid, "ACTIVE")
            c.delete_object(cid)
            assert c.get_insights(cid) is None
        assert not post.called and not get.called and not delete.called

    @pytest.mark.parametrize("status", ["DELETED", "", "running"])
    def test_unknown_status_rejected_locally(self, client, status):
        with patch("adlab.integrations.meta_client.requests.post") as post:
            with pytest.raises(ValidationError):
                client.update_status("cmp1", status)
        assert not post.called

    def test_factory_builds_per_owner_client(self):
        factory = MetaClientFactory(MetaSettings(dry_run=True))
        c = factory(Owner(owner_id="u1", access_token="t", ad_account_id="456", page_id="p"))
        assert c.ad_account_id_act == "act_456"
        assert c.dry_run is True
        with pytest.raises(ValidationError):
            factory(Owner(owner_id="u2"))


class TestAdAccounts:
    def test_lists_accounts_the_token_manages(self, client):
        body = {"data": [{"id": "act_555", "name": "Other"}, {"id": "act_123", "name": "Mine"}]}
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(body=body)) as get:
            assert [a["name"] for a in client.list_ad_accounts()] == ["Other", "Mine"]
            assert client.can_access_account() is True
        assert get.call_args.args[0] == "https://graph.facebook.com/v19.0/me/adaccounts"

    def test_foreign_account_is_not_accessible(self, client):
        body = {"data": [{"id": "act_555"}]}
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(body=body)):
            assert client.can_access_account() is False

    def test_malformed_account_list(self, client):
        with patch("adlab.integrations.meta_client.requests.get", return_value=FakeResponse(body={"data": "x"})):
            with pytest.raises(RemotePolicyError):
                client.list_ad_accounts()
