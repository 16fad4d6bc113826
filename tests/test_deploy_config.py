"""Tests for deployment config rendering (commands, systemd units, setup scripts)."""

import json

import pytest

from tunnelcore.engines import deploy
from tunnelcore.engines.chisel import ChiselEngine
from tunnelcore.engines.frp import FRPEngine
from tunnelcore.engines.gost import GostEngine
from tunnelcore.engines.ssh import SSHEngine
from tunnelcore.engines.trusttunnel import TrustTunnelEngine


class TestDeployConfig:
    """generate_deploy_config() for each engine"""

    def test_gost_config_file_deployment(self, tmp_path, spawner):
        """Config is written under /etc/elahe and referenced by the unit"""
        engine = GostEngine(config_dir=tmp_path, spawner=spawner)
        result = engine.generate_deploy_config(
            {"tunnel_id": "g1", "gost_mode": "relay", "listen_port": 8388, "transport": "tls"}
        )
        assert result["engine"] == "gost"
        assert result["mode"] == "relay"
        assert result["config_path"] == "/etc/elahe/gost/g1.json"
        assert result["command"] == "/usr/local/bin/gost -C /etc/elahe/gost/g1.json"
        assert json.loads(result["config"])["services"][0]["listener"]["type"] == "tls"
        assert result["unit_name"] == "elahe-gost-g1"
        assert "ExecStart=/usr/local/bin/gost -C /etc/elahe/gost/g1.json" in result["supervisor_unit"]
        assert "Restart=always" in result["supervisor_unit"]

        script = result["setup_script"]
        assert script.startswith("#!/bin/sh\nset -e\n")
        assert "if ! command -v gost >/dev/null 2>&1; then" in script
        assert "go-gost/gost/releases/download" in script
        assert "cat > /etc/elahe/gost/g1.json <<'ELAHE_CONFIG'" in script
        assert "cat > /etc/systemd/system/elahe-gost-g1.service <<'ELAHE_UNIT'" in script
        assert script.rstrip().endswith("systemctl restart elahe-gost-g1")

    def test_generation_has_no_side_effects(self, tmp_path, spawner):
        """Rendering never spawns processes or writes local files"""
        engine = FRPEngine(config_dir=tmp_path, spawner=spawner)
        engine.generate_deploy_config({"far_ip": "203.0.113.10", "listen_port": 20000, "token": "t"})
        assert spawner.count == 0
        assert engine.handles == {}
        assert list(tmp_path.iterdir()) == []

    def test_frp_server_uses_frps(self, tmp_path):
        engine = FRPEngine(config_dir=tmp_path)
        result = engine.generate_deploy_config({"tunnel_id": "f1", "frp_mode": "server", "bind_port": 7000})
        assert result["command"] == "/usr/local/bin/frps -c /etc/elahe/frp/f1.toml"
        assert "bindPort = 7000" in result["config"]
        assert "command -v frps" in result["setup_script"]
        assert "install -m 0755 /tmp/frp_" in result["setup_script"]

    def test_argv_only_engine_has_no_config(self, tmp_path):
        """Chisel is driven by flags only"""
        engine = ChiselEngine(config_dir=tmp_path)
        result = engine.generate_deploy_config({"tunnel_id": "c1", "chisel_mode": "server", "listen_port": 9443})
        assert "config" not in result
        assert "config_path" not in result
        assert result["command"] == "/usr/local/bin/chisel server --host 0.0.0.0 --port 9443 --reverse --keepalive 25s"
        assert "ELAHE_CONFIG" not in result["setup_script"]

    def test_ssh_default_tunnel_id(self, tmp_path):
        engine = SSHEngine(config_dir=tmp_path)
        result = engine.generate_deploy_config({"far_ip": "203.0.113.10", "listen_port": 20000})
        assert result["tunnel_id"] == "ssh-tunnel"
        assert result["unit_name"] == "elahe-ssh-ssh-tunnel"
        assert "apt-get install -y openssh-client" in result["setup_script"]
        assert result["command"].endswith("-p 22 root@203.0.113.10")

    def test_trusttunnel_unit_carries_environment(self, tmp_path):
        engine = TrustTunnelEngine(config_dir=tmp_path, serve_decoy=False)
        result = engine.generate_deploy_config({"tunnel_id": "tt1", "listen_port": 8443})
        assert "Environment=ELAHE_TUNNEL_ID=tt1" in result["supervisor_unit"]
        assert result["command"] == "/usr/local/bin/gost -L relay+quic://0.0.0.0:8443"
        assert json.loads(result["config"])["transport"]["listen"] == "0.0.0.0:8443"

    def test_invalid_options_raise(self, tmp_path):
        engine = GostEngine(config_dir=tmp_path)
        with pytest.raises(ValueError):
            engine.generate_deploy_config({"gost_mode": "teleport", "listen_port": 1})


class TestDeployHelpers:
    """Unit and script rendering helpers"""

    def test_render_unit_quotes_arguments(self):
        unit = deploy.render_unit("demo", ["/usr/local/bin/tool", "--name", "two words"])
        assert "ExecStart=/usr/local/bin/tool --name 'two words'" in unit
        assert "WantedBy=multi-user.target" in unit

    def test_unknown_binary_has_no_install_recipe(self):
        with pytest.raises(ValueError):
            deploy.install_snippet("nc")
