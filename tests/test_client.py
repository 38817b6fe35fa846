"""Tests for companion_core.llm.client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from ollama import ResponseError

from companion_core.errors import (
    CredentialAuthError,
    CredentialQuotaError,
    CredentialRateLimited,
    GenerationExhausted,
    GenerationTransientError,
)
from companion_core.llm.client import (
    GenerationClient,
    classify_response_error,
    turns_to_messages,
)
from companion_core.llm.credentials import CredentialPool
from companion_core.paths import Paths
from companion_core.storage.settings import DEFAULT_MODEL, Settings


def reply(text):
    return {"message": {"role": "assistant", "content": text}}


def fake_backend(*secrets):
    """One mocked ollama client per secret, plus a factory handing them out."""
    clients = {}
    for secret in secrets:
        client = MagicMock()
        client.chat = AsyncMock(return_value=reply("ok"))
        clients[secret] = client
    return clients, clients.__getitem__


@pytest.fixture
def settings(tmp_path):
    return Settings(Paths(root=tmp_path / "data"))


@pytest.fixture
def sleep():
    return AsyncMock()


TURNS = [{"role": "user", "parts": [{"text": "kohomada?"}]}]


class TestTurnsToMessages:
    def test_roles(self):
        turns = [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [{"text": "hello"}, {"text": "there"}]},
        ]
        assert turns_to_messages(turns) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello\nthere"},
        ]

    def test_system_first(self):
        messages = turns_to_messages(TURNS, system="be kind")
        assert messages[0] == {"role": "system", "content": "be kind"}
        assert len(messages) == 2


class TestClassify:
    @pytest.mark.parametrize("message,status,expected", [
        ("unauthorized", 401, CredentialAuthError),
        ("forbidden", 403, CredentialAuthError),
        ("invalid API key", 400, CredentialAuthError),
        ("quota exceeded", 429, CredentialQuotaError),
        ("too many requests", 429, CredentialRateLimited),
        ("rate limit hit", 400, CredentialRateLimited),
        ("internal server error", 500, GenerationTransientError),
    ])
    def test_mapping(self, message, status, expected):
        assert isinstance(classify_response_error(ResponseError(message, status)), expected)


class TestGenerate:
    async def test_success(self, settings, sleep):
        clients, factory = fake_backend("k1")
        clients["k1"].chat.return_value = reply("  hari hari  ")
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)

        assert await client.generate(TURNS, system="sys") == "hari hari"
        kwargs = clients["k1"].chat.await_args.kwargs
        assert kwargs["model"] == DEFAULT_MODEL
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert kwargs["options"] == {"num_predict": 8192, "temperature": 0.8}
        sleep.assert_not_awaited()

    async def test_fails_over_to_next_key(self, settings, sleep):
        clients, factory = fake_backend("k1", "k2")
        clients["k1"].chat.side_effect = ResponseError("rate limit exceeded", 429)
        pool = CredentialPool(["k1", "k2"])
        client = GenerationClient(settings, pool, factory, sleep)

        assert await client.generate(TURNS) == "ok"
        assert pool.state(0).quarantined
        assert pool.state(0).restore_at is not None
        assert not pool.state(1).quarantined
        sleep.assert_awaited_once_with(2.0)

    async def test_auth_failure_quarantined_without_cooldown(self, settings, sleep):
        clients, factory = fake_backend("k1", "k2")
        clients["k1"].chat.side_effect = ResponseError("unauthorized", 401)
        pool = CredentialPool(["k1", "k2"])
        client = GenerationClient(settings, pool, factory, sleep)

        assert await client.generate(TURNS) == "ok"
        assert pool.state(0).quarantined
        assert pool.state(0).restore_at is None

    async def test_transient_retried_without_quarantine(self, settings, sleep):
        clients, factory = fake_backend("k1")
        clients["k1"].chat.side_effect = [
            ResponseError("internal server error", 500),
            ConnectionError("reset by peer"),
            reply("ok"),
        ]
        pool = CredentialPool(["k1"])
        client = GenerationClient(settings, pool, factory, sleep)

        assert await client.generate(TURNS) == "ok"
        assert not pool.state(0).quarantined
        assert pool.state(0).usage == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    async def test_empty_response_retried(self, settings, sleep):
        clients, factory = fake_backend("k1")
        clients["k1"].chat.side_effect = [reply("   "), reply("ok")]
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)

        assert await client.generate(TURNS) == "ok"
        assert clients["k1"].chat.await_count == 2

    async def test_exhausted(self, settings, sleep):
        clients, factory = fake_backend("k1")
        clients["k1"].chat.side_effect = ResponseError("internal server error", 500)
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)

        with pytest.raises(GenerationExhausted) as info:
            await client.generate(TURNS, max_retries=2)
        assert info.value.attempts == 2
        assert isinstance(info.value.last_error, GenerationTransientError)
        assert clients["k1"].chat.await_count == 2

    async def test_max_retries_from_settings(self, settings, sleep):
        settings.set("max_retries", 4)
        clients, factory = fake_backend("k1")
        clients["k1"].chat.side_effect = ResponseError("internal server error", 500)
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)

        with pytest.raises(GenerationExhausted):
            await client.generate(TURNS)
        assert clients["k1"].chat.await_count == 4

    async def test_clients_cached_per_key(self, settings, sleep):
        _, factory = fake_backend("k1")
        factory = MagicMock(side_effect=factory)
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)

        await client.generate(TURNS)
        await client.generate(TURNS)
        factory.assert_called_once_with("k1")

    async def test_status(self, settings, sleep):
        _, factory = fake_backend("k1")
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)
        await client.generate(TURNS)
        assert client.status()["keyStats"]["key_1"]["usage"] == 1

    async def test_zero_retries_rejected(self, settings, sleep):
        _, factory = fake_backend("k1")
        client = GenerationClient(settings, CredentialPool(["k1"]), factory, sleep)
        with pytest.raises(ValueError):
            await client.generate(TURNS, max_retries=0)
