"""
Tests for tiller.core.secrets.

Covers:
- SecretValue redaction
- Env, file and dict backends
- Ref syntax: secret:<backend>:<key>, bare names, OpenBao paths
- Failures name the ref, never the value
"""

import httpx
import pytest

from tiller.core.errors import MissingSecretError
from tiller.core.secrets import (
    DictSecretBackend,
    EnvSecretBackend,
    FileSecretBackend,
    OpenBaoSecretBackend,
    SecretResolutionError,
    SecretsResolver,
    SecretValue,
    build_resolver,
)


class TestSecretValue:
    def test_str_and_repr_are_redacted(self):
        value = SecretValue("hunter2")
        assert str(value) == "[REDACTED]"
        assert "hunter2" not in repr(value)
        assert value.get_secret() == "hunter2"

    def test_equality_and_truthiness(self):
        assert SecretValue("a") == SecretValue("a")
        assert SecretValue("a") != "a"
        assert not SecretValue("")


class TestBackends:
    def test_env_backend_tries_prefixed_name(self, monkeypatch):
        monkeypatch.setenv("TILLER_SECRET_PROM_TOKEN", "from-env")
        assert EnvSecretBackend().get("prom_token") == "from-env"

    def test_file_backend_reads_and_strips(self, tmp_path):
        (tmp_path / "token").write_text("abc\n", encoding="utf-8")
        backend = FileSecretBackend(tmp_path)
        assert backend.get("token") == "abc"
        assert backend.get(str(tmp_path / "token")) == "abc"
        assert backend.get("missing") is None


class TestResolver:
    def test_named_env_ref(self, monkeypatch):
        monkeypatch.setenv("PROM_TOKEN", "tok")
        assert SecretsResolver().resolve("secret:env:PROM_TOKEN").get_secret() == "tok"

    def test_named_file_ref(self, tmp_path):
        path = tmp_path / "tok"
        path.write_text("file-tok", encoding="utf-8")
        assert SecretsResolver().resolve(f"secret:file:{path}").get_secret() == "file-tok"

    def test_bare_name_tries_backends_in_order(self):
        resolver = SecretsResolver([DictSecretBackend({"a": "first"}), DictSecretBackend({"a": "second"})])
        assert resolver.resolve("a").get_secret() == "first"

    def test_missing_secret_lists_tried_backends(self):
        resolver = SecretsResolver([DictSecretBackend()])
        with pytest.raises(MissingSecretError) as exc_info:
            resolver.resolve("nope")
        assert exc_info.value.details == {"ref": "nope", "tried": ["dict"]}

    def test_unknown_backend_is_a_resolution_error(self):
        with pytest.raises(SecretResolutionError):
            SecretsResolver().resolve("secret:vault9:key")

    def test_malformed_ref(self):
        with pytest.raises(SecretResolutionError):
            SecretsResolver().resolve("secret:")

    def test_missing_value_never_appears_in_message(self, monkeypatch):
        monkeypatch.delenv("ABSENT_TOKEN", raising=False)
        with pytest.raises(MissingSecretError) as exc_info:
            SecretsResolver().resolve("secret:env:ABSENT_TOKEN")
        assert "secret:env:ABSENT_TOKEN" in exc_info.value.message


class TestOpenBao:
    def _backend(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return OpenBaoSecretBackend("http://bao:8200", SecretValue("root"), client=client)

    def test_reads_kv_v2_value(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["token"] = request.headers["X-Vault-Token"]
            return httpx.Response(200, json={"data": {"data": {"value": "bao-secret"}}})

        resolver = SecretsResolver([self._backend(handler)])
        assert resolver.resolve("/apps/web/prom").get_secret() == "bao-secret"
        assert seen == {"url": "http://bao:8200/v1/secret/data/apps/web/prom", "token": "root"}

    def test_not_found_is_missing_secret(self):
        resolver = SecretsResolver([self._backend(lambda request: httpx.Response(404))])
        with pytest.raises(MissingSecretError):
            resolver.resolve("/apps/none")

    def test_server_error_raises_resolution_error(self):
        backend = self._backend(lambda request: httpx.Response(500))
        with pytest.raises(SecretResolutionError):
            backend.get("/apps/x")


class TestBuildResolver:
    def test_default_chain_without_openbao(self, settings, monkeypatch):
        monkeypatch.setenv("CHAIN_TOKEN", "env-value")
        resolver = build_resolver(settings)
        assert resolver.resolve("CHAIN_TOKEN").get_secret() == "env-value"
