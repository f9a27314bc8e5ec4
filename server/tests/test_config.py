"""
Tests for configuration module.
"""
import os
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from gamedeploy.core.config import Settings
from gamedeploy.services.hypervisor_settings import resolve_hypervisor_config


@pytest.mark.unit
class TestSettings:
    """Test configuration settings."""

    def test_default_settings(self):
        """Test that default settings are loaded correctly."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.app_name == "Game Server Deployer"
        assert settings.debug is False
        assert settings.dry_run is False
        assert settings.pipeline_failure_policy == "mark_failed"
        assert settings.hostname_prefix == "mc-"
        assert settings.management_port == 22

    def test_settings_from_env(self):
        """Test that settings can be loaded from environment variables."""
        env_vars = {
            "DRY_RUN": "true",
            "NET_CIDR": "192.168.50.0/24",
            "NET_GATEWAY": "192.168.50.1",
            "PROXMOX_TEMPLATE_VMID": "9000",
            "PIPELINE_FAILURE_POLICY": "leave_running",
        }

        with patch.dict(os.environ, env_vars):
            settings = Settings(_env_file=None)

            assert settings.dry_run is True
            assert settings.net_cidr == "192.168.50.0/24"
            assert settings.proxmox_template_vmid == 9000
            assert settings.pipeline_failure_policy == "leave_running"

    def test_dns_falls_back_to_gateway(self):
        """DNS defaults to the gateway unless NET_DNS is set."""
        assert Settings(net_gateway="10.0.0.1").get_net_dns() == "10.0.0.1"
        assert Settings(net_gateway="10.0.0.1", net_dns="1.1.1.1").get_net_dns() == "1.1.1.1"

    def test_proxmox_credentials_require_all_parts(self):
        """Fallback Proxmox credentials need URL, token id and secret."""
        partial = Settings(proxmox_api_url="https://pve:8006", proxmox_token_id="a@pve!b", proxmox_token_secret=None)
        complete = partial.model_copy(update={"proxmox_token_secret": "s"})

        assert partial.has_proxmox_credentials() is False
        assert complete.has_proxmox_credentials() is True

    def test_invalid_failure_policy_rejected(self):
        """Unknown failure policies are refused at load time."""
        with pytest.raises(ValueError):
            Settings(pipeline_failure_policy="retry_forever")

    def test_allowed_nodes_reach_fallback_hypervisor_config(self):
        """PROXMOX_ALLOWED_NODES is a JSON list copied into the fallback config."""
        env_vars = {
            "PROXMOX_API_URL": "https://pve:8006",
            "PROXMOX_TOKEN_ID": "a@pve!b",
            "PROXMOX_TOKEN_SECRET": "s",
            "PROXMOX_ALLOWED_NODES": '["pve1", "pve2"]',
        }

        with patch.dict(os.environ, env_vars):
            settings = Settings(_env_file=None)

        config = resolve_hypervisor_config(SimpleNamespace(load_hypervisor_config=lambda: None), settings)
        assert config.allowed_nodes == ["pve1", "pve2"]
