from unittest.mock import MagicMock, patch

import pytest

from adlab.config import Settings
from adlab.infrastructure.creative_storage import (
    StaticAssetSigner,
    SupabaseAssetSigner,
    clamp_ttl,
    create_asset_signer,
)
from adlab.infrastructure.error_handling import RemotePolicyError, RemoteTransientError, ValidationError
from adlab.integrations import slack


class TestAssetSigners:
    @pytest.mark.parametrize("ttl,expected", [(0, 1), (3600, 3600), (30 * 86400, 7 * 86400)])
    def test_ttl_capped_at_seven_days(self, ttl, expected):
        assert clamp_ttl(ttl) == expected

    def test_supabase_signed_url(self):
        sb = MagicMock()
        sb.storage.from_.return_value.create_signed_url.return_value = {"signedURL": "https://sb.test/x?token=1"}
        signer = SupabaseAssetSigner(sb, "creatives")
        assert signer.sign("c1.png", 30 * 86400) == "https://sb.test/x?token=1"
        sb.storage.from_.assert_called_with("creatives")
        sb.storage.from_.return_value.create_signed_url.assert_called_once_with("c1.png", 7 * 86400)

    def test_supabase_errors(self):
        sb = MagicMock()
        bucket = sb.storage.from_.return_value
        bucket.create_signed_url.side_effect = ConnectionError("reset")
        with pytest.raises(RemoteTransientError):
            SupabaseAssetSigner(sb, "creatives").sign("c1.png", 60)
        bucket.create_signed_url.side_effect = None
        bucket.create_signed_url.return_value = {"error": "not found"}
        with pytest.raises(RemotePolicyError):
            SupabaseAssetSigner(sb, "creatives").sign("c1.png", 60)

    def test_supabase_upload(self, tmp_path):
        img = tmp_path / "hero.JPG"
        img.write_bytes(b"\xff\xd8")
        sb = MagicMock()
        ref = SupabaseAssetSigner(sb, "creatives").upload_creative("c1", str(img))
        assert ref == "c1.jpg"
        args, kwargs = sb.storage.from_.return_value.upload.call_args
        assert args[0] == "c1.jpg"
        assert kwargs["file_options"]["content-type"] == "image/jpeg"
        with pytest.raises(ValidationError):
            SupabaseAssetSigner(sb, "creatives").upload_creative("c2", str(tmp_path / "missing.png"))

    def test_static_signer(self):
        assert StaticAssetSigner().sign("https://cdn.test/a.png", 60) == "https://cdn.test/a.png"
        assert StaticAssetSigner("https://cdn.test/").sign("/a.png", 60) == "https://cdn.test/a.png"
        assert StaticAssetSigner().sign("https://cdn.test/a.png", 30 * 86400) == "https://cdn.test/a.png"
        with pytest.raises(ValidationError):
            StaticAssetSigner().sign("a.png", 60)
        with pytest.raises(ValidationError):
            StaticAssetSigner("https://cdn.test").sign("", 60)

    def test_supabase_backend_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        with pytest.raises(ValueError):
            create_asset_signer(Settings(assets_backend="supabase"))
        assert isinstance(create_asset_signer(Settings()), StaticAssetSigner)


class TestSlack:
    def test_disabled_without_webhook(self):
        with patch.object(slack.requests.Session, "post") as post:
            slack.notify("hello")
        assert not post.called

    def test_alerts_route_to_alert_webhook(self, monkeypatch):
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.test/main")
        monkeypatch.setenv("SLACK_WEBHOOK_ALERTS", "https://hooks.test/alerts")
        monkeypatch.setenv("SLACK_ENABLED", "true")
        with patch.object(slack.requests.Session, "post", return_value=MagicMock(status_code=200)) as post:
            slack.alert_error("boom")
            slack.notify("fyi")
        urls = [c.args[0] for c in post.call_args_list]
        assert urls == ["https://hooks.test/alerts", "https://hooks.test/main"]
        assert "boom" in post.call_args_list[0].kwargs["json"]["text"]

    def test_delivery_failure_never_raises(self, monkeypatch):
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.test/main")
        monkeypatch.setenv("SLACK_ENABLED", "1")
        with patch.object(slack.requests.Session, "post", return_value=MagicMock(status_code=400, text="bad")) as post:
            assert slack.client().notify(slack.SlackMessage(text="x")) is False
        assert post.call_count == 1

    def test_quiet_sweep_sends_nothing(self, monkeypatch):
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.test/main")
        monkeypatch.setenv("SLACK_ENABLED", "1")
        with patch.object(slack.requests.Session, "post", return_value=MagicMock(status_code=200)) as post:
            slack.alert_sweep_report(3, 0, 0, [])
            slack.alert_sweep_report(2, 1, 0, ["e1: boom"])
        assert post.call_count == 1
