"""
Tests for the reflective memory pipeline (extract → validate → consolidate → save).
"""

import pytest
from unittest.mock import MagicMock
from langchain_core.messages import AIMessage, HumanMessage

from conftest import make_embeddings
from langchain_recall.memory.pipeline import (
    ConsolidationResult,
    FactList,
    MemoryConflict,
    MemoryPipeline,
    UpdateMemory,
    format_conversation,
)
from langchain_recall.memory.store import SearchTable


def structured_llm(responses: dict, text: str = ""):
    """
    Chat model mock keyed by structured-output name.

    A response may be a schema instance (parsed), a str (raw text that failed
    to parse) or an exception (the call fails). `text` answers plain invokes.
    """
    llm = MagicMock()
    llm.runnables = {}

    def with_structured_output(schema, name=None, include_raw=False):
        runnable = MagicMock()
        response = responses.get(name)
        if isinstance(response, Exception):
            runnable.invoke.side_effect = response
        elif isinstance(response, str):
            runnable.invoke.return_value = {
                "raw": AIMessage(content=response),
                "parsed": None,
                "parsing_error": ValueError("not valid"),
            }
        else:
            runnable.invoke.return_value = {
                "raw": AIMessage(content=""),
                "parsed": response,
                "parsing_error": None,
            }
        llm.runnables[name] = runnable
        return runnable

    llm.with_structured_output.side_effect = with_structured_output
    llm.invoke.return_value = AIMessage(content=text)
    return llm


TYPESCRIPT_TURNS = [
    HumanMessage(content="I prefer TypeScript."),
    AIMessage(content="Noted, I will use TypeScript from now on."),
]


# ── Extract Tests ──


class TestExtract:
    def test_empty_input_makes_no_call(self, store):
        llm = MagicMock()
        pipeline = MemoryPipeline(store, llm=llm)
        assert pipeline.extract({"session_id": "s1", "recent_turns": []}) == {"facts": []}
        llm.with_structured_output.assert_not_called()
        llm.invoke.assert_not_called()

    def test_structured_facts(self, store):
        llm = structured_llm({"extract_facts": FactList(facts=["User prefers TypeScript", " "])})
        pipeline = MemoryPipeline(store, llm=llm)
        result = pipeline.extract({"session_id": "s1", "recent_turns": TYPESCRIPT_TURNS})
        assert result == {"facts": ["User prefers TypeScript"]}

    def test_known_memories_in_prompt(self, store):
        store.create_memory("other", "User's name is Alice")
        llm = structured_llm({"extract_facts": FactList(facts=[])})
        pipeline = MemoryPipeline(store, llm=llm)
        pipeline.extract({"session_id": "s1", "recent_turns": TYPESCRIPT_TURNS})
        messages = llm.runnables["extract_facts"].invoke.call_args.args[0]
        assert "- User's name is Alice" in messages[0].content
        assert "Human: I prefer TypeScript." in messages[1].content

    def test_raw_text_parsed_as_json(self, store):
        llm = structured_llm({"extract_facts": 'Here you go: ["User likes tea"]'})
        pipeline = MemoryPipeline(store, llm=llm)
        result = pipeline.extract({"session_id": "s1", "recent_turns": TYPESCRIPT_TURNS})
        assert result == {"facts": ["User likes tea"]}
        llm.invoke.assert_not_called()

    def test_failed_call_retries_as_text(self, store):
        llm = structured_llm(
            {"extract_facts": RuntimeError("tool calling unsupported")},
            text='```json\n["User prefers TypeScript"]\n```',
        )
        pipeline = MemoryPipeline(store, llm=llm)
        result = pipeline.extract({"session_id": "s1", "recent_turns": TYPESCRIPT_TURNS})
        assert result == {"facts": ["User prefers TypeScript"]}
        llm.invoke.assert_called_once()

    def test_everything_fails(self, store):
        llm = structured_llm({"extract_facts": "no json here"}, text="still no json")
        pipeline = MemoryPipeline(store, llm=llm)
        result = pipeline.extract({"session_id": "s1", "recent_turns": TYPESCRIPT_TURNS})
        assert result == {"facts": []}

    def test_no_llm(self, store):
        pipeline = MemoryPipeline(store)
        result = pipeline.extract({"session_id": "s1", "recent_turns": TYPESCRIPT_TURNS})
        assert result == {"facts": []}

    def test_format_conversation(self):
        assert format_conversation(TYPESCRIPT_TURNS) == (
            "Human: I prefer TypeScript.\nAI: Noted, I will use TypeScript from now on."
        )


# ── Validate Tests ──


class TestValidate:
    def test_drops_exact_duplicates(self, store):
        store.create_memory("s1", "User prefers TypeScript")
        pipeline = MemoryPipeline(store)
        result = pipeline.validate({
            "session_id": "s1",
            "facts": ["User prefers TypeScript", "User uses Vim"],
        })
        assert result == {"facts": ["User uses Vim"]}

    def test_other_sessions_not_considered(self, store):
        store.create_memory("s2", "User prefers TypeScript")
        pipeline = MemoryPipeline(store)
        result = pipeline.validate({"session_id": "s1", "facts": ["User prefers TypeScript"]})
        assert result == {"facts": ["User prefers TypeScript"]}

    def test_store_failure_keeps_facts(self):
        broken = MagicMock()
        broken.recent_memories.side_effect = RuntimeError("db down")
        pipeline = MemoryPipeline(broken)
        result = pipeline.validate({"session_id": "s1", "facts": ["a fact"]})
        assert result == {"facts": ["a fact"]}


# ── Consolidate Tests ──


class TestConsolidate:
    def test_no_similar_memories_passes_through(self, store):
        llm = MagicMock()
        embeddings = make_embeddings({}, default=[1.0, 0.0])
        pipeline = MemoryPipeline(store, embeddings, llm)
        result = pipeline.consolidate({"session_id": "s1", "facts": ["User uses Vim"]})
        assert result == {"facts": ["User uses Vim"], "updates": []}
        llm.with_structured_output.assert_not_called()

    def test_conflict_becomes_update(self, store):
        old = store.create_memory("s1", "User prefers Python")
        store.add_embedding(SearchTable.MEMORIES, old.id, "s1", [1.0, 0.0])
        new_fact = "User now prefers TypeScript over Python"
        llm = structured_llm({
            "consolidate_memories": ConsolidationResult(
                conflicts=[MemoryConflict(
                    old_memory_id=old.id,
                    new_content=new_fact,
                    reasoning="Preference changed",
                )],
                final_facts=[new_fact],
            ),
        })
        embeddings = make_embeddings({new_fact: [0.9, 0.3]})
        pipeline = MemoryPipeline(store, embeddings, llm)

        result = pipeline.consolidate({"session_id": "s1", "facts": [new_fact]})

        assert result["updates"] == [UpdateMemory(old.id, new_fact, "Preference changed")]
        assert result["facts"] == []
        assert store.get_memory(old.id).content == "User prefers Python"

    def test_unknown_memory_id_ignored(self, store):
        old = store.create_memory("s1", "User prefers Python")
        store.add_embedding(SearchTable.MEMORIES, old.id, "s1", [1.0, 0.0])
        llm = structured_llm({
            "consolidate_memories": ConsolidationResult(
                conflicts=[MemoryConflict(old_memory_id=999, new_content="invented")],
                final_facts=["User likes Go"],
            ),
        })
        pipeline = MemoryPipeline(store, make_embeddings({}, default=[1.0, 0.0]), llm)
        result = pipeline.consolidate({"session_id": "s1", "facts": ["User likes Go"]})
        assert result == {"facts": ["User likes Go"], "updates": []}

    def test_raw_json_object_accepted(self, store):
        old = store.create_memory("s1", "Project uses Next.js 13")
        store.add_embedding(SearchTable.MEMORIES, old.id, "s1", [1.0, 0.0])
        raw = (
            '{"conflicts": [{"old_memory_id": %d, "new_content": "Project uses Next.js 14"}], '
            '"final_facts": []}' % old.id
        )
        llm = structured_llm({"consolidate_memories": raw})
        pipeline = MemoryPipeline(store, make_embeddings({}, default=[1.0, 0.0]), llm)
        result = pipeline.consolidate({"session_id": "s1", "facts": ["Project uses Next.js 14"]})
        assert result["updates"][0].new_content == "Project uses Next.js 14"
        assert result["facts"] == []

    def test_llm_failure_passes_facts_through(self, store):
        old = store.create_memory("s1", "User prefers Python")
        store.add_embedding(SearchTable.MEMORIES, old.id, "s1", [1.0, 0.0])
        llm = structured_llm({"consolidate_memories": RuntimeError("rate limited")})
        pipeline = MemoryPipeline(store, make_embeddings({}, default=[1.0, 0.0]), llm)
        result = pipeline.consolidate({"session_id": "s1", "facts": ["User likes Go"]})
        assert result == {"facts": ["User likes Go"], "updates": []}

    def test_embedding_failure_uses_recent_memories(self, store):
        store.create_memory("s1", "User prefers Python")
        llm = structured_llm({
            "consolidate_memories": ConsolidationResult(final_facts=["User likes Go"]),
        })
        pipeline = MemoryPipeline(store, make_embeddings({}), llm)
        result = pipeline.consolidate({"session_id": "s1", "facts": ["User likes Go"]})
        assert result == {"facts": ["User likes Go"], "updates": []}
        llm.with_structured_output.assert_called_once()

    @pytest.mark.parametrize("embeddings", [
        make_embeddings({}, default=[1.0, 0.0]),
        make_embeddings({}),
    ], ids=["semantic", "recent-fallback"])
    def test_other_sessions_are_never_candidates(self, store, embeddings):
        other = store.create_memory("other-session", "User prefers Python")
        store.add_embedding(SearchTable.MEMORIES, other.id, "other-session", [1.0, 0.0])
        llm = structured_llm({
            "consolidate_memories": ConsolidationResult(
                conflicts=[MemoryConflict(old_memory_id=other.id, new_content="User prefers Go")],
            ),
        })
        pipeline = MemoryPipeline(store, embeddings, llm)

        result = pipeline.consolidate({"session_id": "s1", "facts": ["User prefers Go"]})

        assert result == {"facts": ["User prefers Go"], "updates": []}
        llm.with_structured_output.assert_not_called()
        assert store.get_memory(other.id).content == "User prefers Python"

    def test_fact_covered_by_merge_not_kept(self, store):
        old = store.create_memory("s1", "User prefers Python")
        store.add_embedding(SearchTable.MEMORIES, old.id, "s1", [1.0, 0.0])
        new_fact = "User now prefers TypeScript"
        merged = "User prefers TypeScript (switched from Python)"
        llm = structured_llm({
            "consolidate_memories": ConsolidationResult(
                conflicts=[MemoryConflict(
                    old_memory_id=old.id, new_content=merged, new_fact=new_fact,
                )],
                final_facts=[new_fact, "User uses Vim"],
            ),
        })
        pipeline = MemoryPipeline(store, make_embeddings({}, default=[1.0, 0.0]), llm)

        result = pipeline.consolidate({
            "session_id": "s1",
            "facts": [new_fact, "User uses Vim"],
        })

        assert [u.new_content for u in result["updates"]] == [merged]
        assert result["facts"] == ["User uses Vim"]


# ── Save Tests ──


class TestSave:
    def test_partial_embedding_failure_is_isolated(self, store):
        embeddings = make_embeddings({"fact one": [1.0, 0.0], "fact three": [0.0, 1.0]})
        pipeline = MemoryPipeline(store, embeddings)

        result = pipeline.save({
            "session_id": "s1",
            "facts": ["fact one", "fact two", "fact three"],
        })

        contents = {m.content for m in store.recent_memories("s1")}
        assert {"fact one", "fact three"} <= contents
        assert len(result["saved_ids"]) == 3
        assert len(result["unembedded_ids"]) == 1
        assert result["failed_facts"] == []
        hits = store.search_by_vector(SearchTable.MEMORIES, [1.0, 0.0], threshold=0.99)
        assert [h.content for h in hits] == ["fact one"]

    def test_partial_store_failure_is_isolated(self, store):
        flaky = MagicMock(wraps=store)
        original = store.create_memory

        def create_memory(session_id, content, **kwargs):
            if content == "fact two":
                raise RuntimeError("constraint violated")
            return original(session_id, content, **kwargs)

        flaky.create_memory.side_effect = create_memory
        pipeline = MemoryPipeline(flaky, make_embeddings({}, default=[1.0, 0.0]))

        result = pipeline.save({
            "session_id": "s1",
            "facts": ["fact one", "fact two", "fact three"],
        })

        assert [m.content for m in store.recent_memories("s1")] == ["fact three", "fact one"]
        assert result["failed_facts"] == ["fact two"]

    def test_updates_applied(self, store):
        old = store.create_memory("s0", "User prefers Python")
        pipeline = MemoryPipeline(store)
        result = pipeline.save({
            "session_id": "s1",
            "facts": [],
            "updates": [UpdateMemory(old.id, "User prefers TypeScript"), UpdateMemory(42, "gone")],
        })
        assert result["updated_ids"] == [old.id]
        assert store.get_memory(old.id).content == "User prefers TypeScript"

    def test_saved_memories_have_category(self, store):
        pipeline = MemoryPipeline(store)
        result = pipeline.save({"session_id": "s1", "facts": ["User uses Vim"]})
        memory = store.get_memory(result["saved_ids"][0])
        assert memory.category == "extracted_fact"
        assert memory.confidence == 1.0


# ── Full Pipeline Tests ──


class TestPipelineRun:
    def test_first_preference_is_saved(self, store):
        llm = structured_llm({"extract_facts": FactList(facts=["User prefers TypeScript"])})
        embeddings = make_embeddings({}, default=[1.0, 0.0])
        pipeline = MemoryPipeline(store, embeddings, llm)

        state = pipeline.run("s1", TYPESCRIPT_TURNS)

        [memory] = store.recent_memories("s1")
        assert memory.content == "User prefers TypeScript"
        assert state["saved_ids"] == [memory.id]
        assert state["unembedded_ids"] == []
        hits = store.search_by_vector(SearchTable.MEMORIES, [1.0, 0.0])
        assert [h.id for h in hits] == [memory.id]
        # Nothing similar existed, so consolidation never asked the model
        names = [c.kwargs.get("name") for c in llm.with_structured_output.call_args_list]
        assert names == ["extract_facts"]

    def test_changed_preference_updates_memory(self, store):
        old = store.create_memory("s1", "User prefers Python")
        store.add_embedding(SearchTable.MEMORIES, old.id, "s1", [1.0, 0.0])
        new_fact = "User now prefers TypeScript over Python"
        llm = structured_llm({
            "extract_facts": FactList(facts=[new_fact]),
            "consolidate_memories": ConsolidationResult(
                conflicts=[MemoryConflict(old_memory_id=old.id, new_content=new_fact)],
                final_facts=[new_fact],
            ),
        })
        pipeline = MemoryPipeline(store, make_embeddings({}, default=[0.9, 0.3]), llm)

        state = pipeline.run("s1", [HumanMessage(content="Actually I use TypeScript now.")])

        assert state["updated_ids"] == [old.id]
        assert state["saved_ids"] == []
        assert [m.content for m in store.recent_memories(None)] == [new_fact]

    def test_nothing_to_remember(self, store):
        llm = structured_llm({"extract_facts": FactList(facts=[])})
        pipeline = MemoryPipeline(store, make_embeddings({}, default=[1.0, 0.0]), llm)
        state = pipeline.run("s1", [HumanMessage(content="hi")])
        assert state["facts"] == []
        assert state["saved_ids"] == []
        assert store.recent_memories(None) == []

