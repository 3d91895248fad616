"""
Tests for cloudflared config handling and the Cloudflare API client.
"""

import keyring
import keyring.errors
import pytest
import yaml

from minipc import cloudflare
from minipc.cloudflare import (
    CloudflareAPI, IngressRule, render_config, insert_ingress_rule, config_hostnames,
    ingress_map, parse_tunnel_list, parse_tunnel_id, add_port_to_config, parse_ports,
    detect_prefix, detect_host_tunnel, local_hostname, render_cockpit_conf, service_port,
)
from minipc.error_handling import TunnelError

TID = "6f1c2a3b-1111-2222-3333-444455556666"


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status
        self.ok = status < 400

    def json(self):
        return self.payload


class FakeSession:
    """Replays queued responses and records every request."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)


def ok(result):
    return FakeResponse({"success": True, "result": result})


class TestCloudflareAPI:
    def test_auth_header(self):
        session = FakeSession()
        CloudflareAPI("tok", session=session)
        assert session.headers["Authorization"] == "Bearer tok"

    def test_list_zones(self):
        session = FakeSession(ok([{"name": "example.com"}, {"name": "example.org"}]))
        assert CloudflareAPI("tok", session=session).list_zones() == ["example.com", "example.org"]
        method, url, kwargs = session.calls[0]
        assert (method, url.rsplit("/", 1)[-1]) == ("GET", "zones")
        assert kwargs["params"]["status"] == "active"

    def test_zone_id_missing(self):
        assert CloudflareAPI("tok", session=FakeSession(ok([]))).zone_id("nope.com") is None

    def test_upsert_cname_created(self):
        session = FakeSession(ok([]), ok({"id": "rec1"}))
        assert CloudflareAPI("tok", session=session).upsert_cname("z1", "a.example.com", "t.cfargotunnel.com") == "created"
        method, url, kwargs = session.calls[1]
        assert method == "POST"
        assert kwargs["json"] == {"type": "CNAME", "name": "a.example.com",
                                  "content": "t.cfargotunnel.com", "proxied": True}

    def test_upsert_cname_unchanged_and_updated(self):
        existing = ok([{"id": "rec1", "content": "t.cfargotunnel.com"}])
        api = CloudflareAPI("tok", session=FakeSession(existing))
        assert api.upsert_cname("z1", "a.example.com", "t.cfargotunnel.com") == "unchanged"

        session = FakeSession(ok([{"id": "rec1", "content": "old.cfargotunnel.com"}]), ok({}))
        assert CloudflareAPI("tok", session=session).upsert_cname("z1", "a.example.com", "t.cfargotunnel.com") == "updated"
        assert session.calls[1][0] == "PUT"
        assert session.calls[1][1].endswith("/dns_records/rec1")

    def test_api_error(self):
        failure = FakeResponse({"success": False, "errors": [{"message": "Invalid token"}]}, status=403)
        with pytest.raises(TunnelError) as exc:
            CloudflareAPI("tok", session=FakeSession(failure)).list_zones()
        assert exc.value.code == "MPC-E1002"
        assert "Invalid token" in str(exc.value)


class TestConfigText:
    def test_render_config_catch_all_last(self):
        text = render_config(TID, f"/home/u/.cloudflared/{TID}.json", [
            IngressRule("ssh.example.com", "ssh://localhost:22"),
            IngressRule(None, "http_status:404"),
            IngressRule("3000-x.example.com", "http://localhost:3000", "localhost:3000"),
        ])
        assert text.startswith(f"tunnel: {TID}\ncredentials-file: ")
        config = yaml.safe_load(text)
        assert config["ingress"] == [
            {"hostname": "ssh.example.com", "service": "ssh://localhost:22"},
            {"hostname": "3000-x.example.com", "service": "http://localhost:3000",
             "originRequest": {"httpHostHeader": "localhost:3000"}},
            {"service": "http_status:404"},
        ]

    def test_insert_before_catch_all(self):
        text = render_config(TID, "creds.json", [IngressRule("a.example.com", "http://localhost:1")])
        result = insert_ingress_rule(text, IngressRule("b.example.com", "http://localhost:2"))
        assert config_hostnames(result) == ["a.example.com", "b.example.com"]
        assert yaml.safe_load(result)["ingress"][-1] == {"service": "http_status:404"}

    def test_insert_before_catch_all_at_column_zero(self):
        text = ("tunnel: x\n"
                "credentials-file: /c.json\n"
                "ingress:\n"
                "- hostname: a.example.com\n"
                "  service: http://localhost:1\n"
                "- service: http_status:404\n")
        result = insert_ingress_rule(text, IngressRule("b.example.com", "http://localhost:2"))
        ingress = yaml.safe_load(result)["ingress"]
        assert [entry.get("hostname") for entry in ingress] == ["a.example.com", "b.example.com", None]
        assert result.count("http_status:404") == 1

    def test_insert_keeps_unknown_keys(self):
        text = ("tunnel: x\ncredentials-file: /c.json\nwarp-routing:\n  enabled: true\ningress:\n"
                "  - hostname: a.example.com\n    service: http://localhost:1\n"
                "    originRequest:\n      noTLSVerify: true\n"
                "  - service: http_status:404\n")
        config = yaml.safe_load(insert_ingress_rule(text, IngressRule("b.example.com", "http://localhost:2")))
        assert config["warp-routing"] == {"enabled": True}
        assert config["ingress"][0]["originRequest"] == {"noTLSVerify": True}

    def test_insert_without_catch_all(self):
        result = insert_ingress_rule("tunnel: x\ningress:\n", IngressRule("b.example.com", "http://localhost:2"))
        assert yaml.safe_load(result)["ingress"] == [
            {"hostname": "b.example.com", "service": "http://localhost:2"},
            {"service": "http_status:404"},
        ]

    def test_invalid_config(self):
        with pytest.raises(TunnelError) as exc:
            config_hostnames("ingress: [unclosed\n")
        assert exc.value.code == "MPC-E1012"

    def test_quoted_hostnames(self):
        text = ('tunnel: x\ningress:\n'
                '  - hostname: "me.example.com"\n    service: ssh://localhost:22\n'
                "  - hostname: 'cockpit.example.com'\n    service: http://localhost:9090\n"
                '  - service: http_status:404\n')
        assert config_hostnames(text) == ["me.example.com", "cockpit.example.com"]

    def test_ingress_map(self):
        text = render_config(TID, "creds.json", [
            IngressRule("ssh.example.com", "ssh://localhost:22"),
            IngressRule("cockpit.example.com", "https://localhost:9090"),
        ])
        assert ingress_map(text) == {"ssh.example.com": "ssh://localhost:22",
                                     "cockpit.example.com": "https://localhost:9090"}
        assert ingress_map("") == {}

    def test_service_port(self):
        assert service_port("http://localhost:3000") == 3000
        assert service_port("ssh://localhost:22") == 22
        assert service_port("http://dokploy-traefik:80") is None
        assert service_port("http_status:404") is None

    def test_add_port_to_config(self):
        text = render_config(TID, "creds.json", [])
        text, added = add_port_to_config(text, 3000, "3000-box.example.com", host_header=True)
        assert added
        assert yaml.safe_load(text)["ingress"][0]["originRequest"] == {"httpHostHeader": "localhost:3000"}
        again, added = add_port_to_config(text, 3000, "other.example.com")
        assert not added
        assert again == text

    def test_add_port_that_prefixes_a_routed_port(self):
        text = render_config(TID, "creds.json", [
            IngressRule("3000-box.example.com", "http://localhost:3000"),
            IngressRule("8080-box.example.com", "http://localhost:8080"),
        ])
        for port in (300, 80):
            text, added = add_port_to_config(text, port, f"{port}-box.example.com")
            assert added
        assert ingress_map(text)["300-box.example.com"] == "http://localhost:300"
        assert ingress_map(text)["80-box.example.com"] == "http://localhost:80"

    def test_detect_prefix(self):
        text = render_config(TID, "creds.json", [IngressRule("9090-box.example.com", "https://localhost:9090")])
        assert detect_prefix(text) == "box"

    def test_detect_host_tunnel(self, tmp_path):
        config = tmp_path / "config.yml"
        config.write_text(render_config(TID, "c.json", [IngressRule("ab12cd34.example.com", "ssh://localhost:22")]))
        assert detect_host_tunnel("nobody", search=[str(tmp_path / "missing.yml"), str(config)]) == \
            ("ab12cd34.example.com", "example.com")
        assert detect_host_tunnel("nobody", search=[str(tmp_path / "missing.yml")]) == ("", "")

    def test_detect_host_tunnel_quoted_hostname(self, tmp_path):
        config = tmp_path / "config.yml"
        config.write_text('tunnel: x\ningress:\n  - hostname: "me.example.com"\n    service: ssh://localhost:22\n'
                          '  - service: http_status:404\n')
        assert detect_host_tunnel("nobody", search=[str(config)]) == ("me.example.com", "example.com")

    def test_detect_host_tunnel_skips_broken_config(self, tmp_path):
        broken = tmp_path / "broken.yml"
        broken.write_text("ingress: [unclosed\n")
        good = tmp_path / "config.yml"
        good.write_text(render_config(TID, "c.json", [IngressRule("me.example.com", "ssh://localhost:22")]))
        assert detect_host_tunnel("nobody", search=[str(broken), str(good)]) == ("me.example.com", "example.com")


class TestParsing:
    def test_parse_tunnel_list(self):
        output = ("You can obtain more detailed information for each tunnel with `cloudflared tunnel info`\n"
                  "ID                                   NAME        CREATED              CONNECTIONS\n"
                  f"{TID} minipc-ssh  2025-01-01T00:00:00Z 2xfra01\n")
        assert parse_tunnel_list(output) == [(TID, "minipc-ssh")]

    def test_parse_tunnel_id(self):
        assert parse_tunnel_id(f"Created tunnel minipc-ssh with id {TID}") == TID
        assert parse_tunnel_id("error") is None

    def test_parse_ports(self):
        assert parse_ports(["8080,3000", "3000 5173", "abc", ""]) == [8080, 3000, 5173]

    def test_local_hostname(self):
        assert local_hostname(9090, "box", "example.com") == "9090-box.example.com"

    def test_cockpit_conf(self):
        assert "Origins = https://c.example.com wss://c.example.com" in render_cockpit_conf("c.example.com")


class TestTokenStorage:
    def test_keyring_first(self, monkeypatch):
        monkeypatch.setattr(keyring, "get_password", lambda service, user: "from-keyring")
        assert cloudflare.load_api_token("nobody") == "from-keyring"

    def test_file_fallback(self, monkeypatch, tmp_path):
        def broken(service, user):
            raise keyring.errors.NoKeyringError("no backend")
        monkeypatch.setattr(keyring, "get_password", broken)
        monkeypatch.setattr(cloudflare, "cloudflared_dir", lambda user=None: str(tmp_path))
        (tmp_path / "api-token").write_text("from-file\n")
        assert cloudflare.load_api_token("nobody") == "from-file"
