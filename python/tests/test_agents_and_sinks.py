"""Tests for the agent registry and the output sinks."""

import json

import pytest

from taskweave.agents import AgentRegistry, CallableAgent, EchoAgent
from taskweave.exceptions import AgentNotFoundError
from taskweave.output_sink import JsonFileOutputSink, MemoryOutputSink


class TestAgentRegistry:

    async def test_plain_callables_are_wrapped(self):
        registry = AgentRegistry()
        registry.register("sync", lambda config, payload: config["n"] * 2)

        async def doubled(config, payload):
            return payload * 2

        registry.register("async", doubled)

        assert isinstance(registry.resolve("sync"), CallableAgent)
        assert await registry.resolve("sync").run({"n": 4}) == 8
        assert await registry.resolve("async").run({}, 5) == 10
        assert registry.agent_ids == ["async", "sync"]

    def test_non_callable_rejected(self):
        with pytest.raises(TypeError):
            AgentRegistry().register("bad", 42)

    def test_resolvers_are_a_fallback(self):
        registry = AgentRegistry()
        local, remote = EchoAgent("local"), EchoAgent("remote")
        registry.register("worker", local)
        registry.add_resolver(lambda agent_id: remote if agent_id.startswith("remote_") else None)

        assert registry.resolve("worker") is local
        assert registry.resolve("remote_enricher") is remote
        assert "remote_enricher" not in registry
        with pytest.raises(AgentNotFoundError):
            registry.resolve("ghost")

    def test_unregister(self):
        registry = AgentRegistry()
        registry.register("worker", EchoAgent())
        assert registry.unregister("worker") is True
        assert registry.unregister("worker") is False

    async def test_echo_agent(self):
        result = await EchoAgent("prospecting_agent").run({"batch": 5}, {"source": "api"})
        assert result["agent"] == "prospecting_agent"
        assert result["config"] == {"batch": 5}
        assert result["trigger_data"] == {"source": "api"}


class TestOutputSinks:

    async def test_json_file_sink(self, tmp_path):
        sink = JsonFileOutputSink(tmp_path / "out")
        await sink.write({"task_id": "research", "data": [1, 2]})

        (path,) = (tmp_path / "out").glob("research_*.json")
        assert json.loads(path.read_text()) == {"task_id": "research", "data": [1, 2]}

    async def test_memory_sink(self):
        sink = MemoryOutputSink()
        await sink.write({"task_id": "t"})
        assert sink.envelopes == [{"task_id": "t"}]
