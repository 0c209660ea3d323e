from __future__ import annotations

from nolatransit._redact import redact_config
from nolatransit.config import TransitConfig


def test_redact_config_masks_credentials() -> None:
    config = TransitConfig(s3_access_key_id="AKIA", s3_secret_access_key="SECRET", motherduck_token=None)

    redacted = redact_config(config)
    assert redacted["s3_access_key_id"] == "<redacted>"
    assert redacted["s3_secret_access_key"] == "<redacted>"
    assert redacted["motherduck_token"] is None
    assert redacted["feed_url"] == config.feed_url
    assert redacted["bucket"] == "nola-transit"
    assert redacted["schedule_hours"] == (6, 18)


def test_redact_config_masks_inline_motherduck_token() -> None:
    config = TransitConfig(
        sink="row",
        row_store="md:transit?motherduck_token=abc123&saas_mode=true",
        summary_store="md:rollups?MOTHERDUCK_TOKEN=xyz",
        motherduck_token="abc123",
    )

    redacted = redact_config(config)
    assert redacted["row_store"] == "md:transit?motherduck_token=<redacted>&saas_mode=true"
    assert redacted["summary_store"] == "md:rollups?MOTHERDUCK_TOKEN=<redacted>"
    assert redacted["motherduck_token"] == "<redacted>"
    assert "abc123" not in repr(redacted)
