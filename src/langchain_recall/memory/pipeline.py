"""
Reflective memory pipeline.

Turns a window of recent conversation into long-term memories through a
linear LangGraph workflow:

    extract → validate → consolidate → save

  - extract:     LLM pulls durable facts (structured output, JSON fallback)
  - validate:    drop facts identical to the session's latest memories
  - consolidate: find semantically close existing memories and let the LLM
                 decide which of them the new facts update or contradict
  - save:        apply the UpdateMemory commands, then store each remaining
                 fact with its embedding, one transaction per item

Every stage is best-effort: a failure narrows its output (fewer facts, no
consolidation, one skipped item) and never stops the pipeline. Stages only
communicate through the MemoryState record.
"""

import logging
from dataclasses import dataclass
from typing import Optional, TypedDict

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field, ValidationError

from .config import MemoryConfig
from .embeddings import EmbeddingService
from .llm import (
    Failed,
    RawText,
    Structured,
    clean_strings,
    extract_json_array,
    extract_json_object,
    invoke_structured,
    invoke_text,
)
from .store import MemoryStore, ScoredRow, SearchTable
from .vector_utils import validate_vector

logger = logging.getLogger(__name__)

EXTRACT_SYSTEM_PROMPT = """You are a Memory Extraction Agent. Extract the key facts, preferences and constraints from the conversation that are worth remembering long term.

Focus on:
1. User preferences (e.g. "User prefers Python", "User does not want SVG output")
2. Project details and constraints (e.g. "The project uses Next.js 14")
3. Personal facts (e.g. "User's name is Alice")

Ignore:
1. Greetings and small talk
2. Temporary context (e.g. "debug this snippet")
3. Questions the user asked, unless they reveal a preference

Write each fact as one short standalone sentence. If nothing is worth remembering, return an empty list."""

KNOWN_MEMORIES_SECTION = """

These facts are already remembered. Do not extract them again:
{memories}"""

FALLBACK_EXTRACT_INSTRUCTION = (
    "Analyze this conversation and output ONLY a JSON array of strings:\n\n"
)

CONSOLIDATE_SYSTEM_PROMPT = """You are a Memory Consolidation Agent. Detect conflicts and redundancies between existing memories and new facts.

Conflicts include:
1. Direct contradictions ("User prefers Python" vs "User prefers JavaScript")
2. Updates to existing information ("Project uses Next.js 13" -> "Project uses Next.js 14")
3. Redundant or duplicate information that should be merged

For each conflict give the old memory ID, the updated or merged content, the new fact it resolves (verbatim), and your reasoning.
final_facts must contain only the new facts that still need to be saved: leave out any fact already covered by a conflict resolution.
If there are no conflicts, return an empty conflicts list and keep all new facts."""


# ── LLM output schemas ──


class FactList(BaseModel):
    """Facts worth remembering from a conversation."""

    facts: list[str] = Field(
        default_factory=list,
        description="List of extracted facts, preferences, or constraints",
    )


class MemoryConflict(BaseModel):
    """An existing memory that a new fact updates or contradicts."""

    old_memory_id: int = Field(description="ID of the existing memory to rewrite")
    new_content: str = Field(description="The updated or merged memory content")
    new_fact: str = Field(
        default="",
        description="The new fact, verbatim, that this conflict resolves",
    )
    reasoning: str = Field(default="", description="Why this consolidation was needed")


class ConsolidationResult(BaseModel):
    """Resolution of new facts against existing memories."""

    conflicts: list[MemoryConflict] = Field(
        default_factory=list,
        description="Existing memories to rewrite",
    )
    final_facts: list[str] = Field(
        default_factory=list,
        description="New facts to save after resolving conflicts",
    )


# ── Pipeline state ──


@dataclass(frozen=True)
class UpdateMemory:
    """Command: rewrite an existing memory's content."""

    memory_id: int
    new_content: str
    reasoning: str = ""


class MemoryState(TypedDict, total=False):
    session_id: str
    recent_turns: list[BaseMessage]
    facts: list[str]
    updates: list[UpdateMemory]
    saved_ids: list[int]
    updated_ids: list[int]
    unembedded_ids: list[int]
    failed_facts: list[str]


def format_conversation(messages: list) -> str:
    lines = []
    for msg in messages:
        role = type(msg).__name__.replace("Message", "")
        content = msg.content if isinstance(msg.content, str) else str(msg.content)
        if content.strip():
            lines.append(f"{role}: {content}")
    return "\n".join(lines)


class MemoryPipeline:
    """
    The four-stage reflective memory workflow.

    Usage:
        pipeline = MemoryPipeline(store, embeddings, llm, config)
        state = pipeline.run(session_id, recent_messages)
        state["saved_ids"]  # ids of newly created memories
    """

    def __init__(
        self,
        store: MemoryStore,
        embeddings: Optional[EmbeddingService] = None,
        llm=None,
        config: Optional[MemoryConfig] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self._llm = llm
        self.config = config or MemoryConfig()
        self.graph = build_memory_graph(self)

    def run(self, session_id: str, recent_turns: list) -> MemoryState:
        return self.graph.invoke({
            "session_id": session_id,
            "recent_turns": list(recent_turns),
            "facts": [],
            "updates": [],
            "saved_ids": [],
            "updated_ids": [],
            "unembedded_ids": [],
            "failed_facts": [],
        })

    # ── Stage 1: extract ──

    def extract(self, state: MemoryState) -> dict:
        logger.info("Memory pipeline: extracting facts")
        recent = state.get("recent_turns") or []
        if not recent:
            return {"facts": []}
        if self._llm is None:
            logger.warning("No LLM configured, skipping memory extraction")
            return {"facts": []}

        conversation = format_conversation(recent)
        if not conversation:
            return {"facts": []}

        system_prompt = EXTRACT_SYSTEM_PROMPT
        known = self._known_memories()
        if known:
            system_prompt += KNOWN_MEMORIES_SECTION.format(
                memories="\n".join(f"- {m}" for m in known)
            )

        result = invoke_structured(
            self._llm,
            FactList,
            [
                SystemMessage(content=system_prompt),
                HumanMessage(content=f"Analyze this conversation:\n\n{conversation}"),
            ],
            name="extract_facts",
        )
        if isinstance(result, Structured):
            facts = clean_strings(result.value.facts)
        else:
            facts = self._fallback_extract(result, system_prompt, conversation)

        logger.info("Extracted %d facts", len(facts))
        logger.debug("Extracted facts: %s", facts)
        return {"facts": facts}

    def _known_memories(self) -> list[str]:
        try:
            memories = self.store.recent_memories(
                None,
                limit=self.config.extract_context_memories,
                order_by="updated_at",
            )
        except Exception as e:
            logger.warning("Failed to load existing memories for extraction: %s", e)
            return []
        return [m.content for m in memories]

    def _fallback_extract(self, result, system_prompt: str, conversation: str) -> list[str]:
        if isinstance(result, RawText):
            parsed = extract_json_array(result.text)
            if parsed is not None:
                return clean_strings(parsed)
            logger.warning("Structured extraction returned unparseable text, retrying")
        elif isinstance(result, Failed):
            logger.warning("Structured extraction failed, retrying as plain text: %s", result.error)

        try:
            text = invoke_text(self._llm, [
                SystemMessage(content=system_prompt),
                HumanMessage(content=FALLBACK_EXTRACT_INSTRUCTION + conversation),
            ])
        except Exception as e:
            logger.warning("Fallback extraction also failed: %s", e)
            return []

        parsed = extract_json_array(text)
        if parsed is None:
            logger.warning("Fallback extraction returned no JSON array")
            return []
        return clean_strings(parsed)

    # ── Stage 2: validate ──

    def validate(self, state: MemoryState) -> dict:
        logger.info("Memory pipeline: validating")
        facts = state.get("facts") or []
        if not facts:
            return {"facts": []}

        try:
            recent = self.store.recent_memories(
                state["session_id"], limit=self.config.validate_window
            )
            existing = {m.content for m in recent}
        except Exception as e:
            logger.warning("Failed to load recent memories for dedupe: %s", e)
            existing = set()

        unique = [f for f in facts if f not in existing]
        if len(unique) < len(facts):
            logger.info("Dropped %d duplicate facts", len(facts) - len(unique))
        return {"facts": unique}

    # ── Stage 3: consolidate ──

    def consolidate(self, state: MemoryState) -> dict:
        logger.info("Memory pipeline: consolidating")
        facts = state.get("facts") or []
        if not facts:
            return {"facts": [], "updates": []}

        candidates = self._relevant_memories(state["session_id"], facts)
        if not candidates:
            logger.info("No similar memories found, skipping consolidation")
            return {"facts": facts, "updates": []}
        if self._llm is None:
            return {"facts": facts, "updates": []}

        existing_text = "\n".join(
            f"[ID: {m.id}] {m.content} (similarity: {m.score:.2f})" for m in candidates
        )
        new_facts_text = "\n".join(facts)
        result = invoke_structured(
            self._llm,
            ConsolidationResult,
            [
                SystemMessage(content=CONSOLIDATE_SYSTEM_PROMPT),
                HumanMessage(
                    content=f"Existing memories:\n{existing_text}\n\nNew facts:\n{new_facts_text}"
                ),
            ],
            name="consolidate_memories",
        )

        resolution = self._resolution_from(result)
        if resolution is None:
            return {"facts": facts, "updates": []}

        candidate_ids = {m.id for m in candidates}
        updates = []
        covered = set()
        for conflict in resolution.conflicts:
            content = conflict.new_content.strip()
            if conflict.old_memory_id not in candidate_ids:
                logger.warning(
                    "Consolidation referenced unknown memory %s, ignoring", conflict.old_memory_id
                )
                continue
            if not content:
                continue
            updates.append(UpdateMemory(conflict.old_memory_id, content, conflict.reasoning))
            covered.add(content.lower())
            if conflict.new_fact.strip():
                covered.add(conflict.new_fact.strip().lower())

        final_facts = [
            f for f in clean_strings(resolution.final_facts) if f.lower() not in covered
        ]
        logger.info(
            "Consolidation: %d updates, %d facts to save", len(updates), len(final_facts)
        )
        return {"facts": final_facts, "updates": updates}

    def _relevant_memories(self, session_id: str, facts: list[str]) -> list[ScoredRow]:
        """Existing memories semantically close to the batch of new facts."""
        try:
            if self.embeddings is None:
                raise RuntimeError("no embedding service configured")
            vector = self.embeddings.embed(" ".join(facts))
            if not vector:
                return []
            return self.store.search_by_vector(
                SearchTable.MEMORIES,
                vector,
                session_id=session_id,
                threshold=self.config.consolidate_threshold,
                limit=self.config.consolidate_limit,
            )
        except Exception as e:
            logger.warning("Semantic filtering failed, falling back to recent memories: %s", e)

        try:
            recent = self.store.recent_memories(
                session_id, limit=self.config.consolidate_limit
            )
        except Exception as e:
            logger.warning("Failed to load recent memories: %s", e)
            return []
        return [ScoredRow(m.id, m.session_id, m.content, 0.0) for m in recent]

    @staticmethod
    def _resolution_from(result) -> Optional[ConsolidationResult]:
        if isinstance(result, Structured):
            return result.value
        if isinstance(result, RawText):
            payload = extract_json_object(result.text)
            if payload is not None:
                try:
                    return ConsolidationResult.model_validate(payload)
                except ValidationError as e:
                    logger.warning("Consolidation output did not match schema: %s", e)
                    return None
            logger.warning("Consolidation returned unparseable text, skipping")
            return None
        logger.warning("Error consolidating memories, skipping: %s", result.error)
        return None

    # ── Stage 4: save ──

    def save(self, state: MemoryState) -> dict:
        logger.info("Memory pipeline: saving")
        session_id = state["session_id"]

        updated_ids = []
        for update in state.get("updates") or []:
            try:
                with self.store.transaction():
                    applied = self.store.update_memory(update.memory_id, update.new_content)
            except Exception as e:
                logger.warning("Failed to update memory %d: %s", update.memory_id, e)
                continue
            if applied:
                updated_ids.append(update.memory_id)
                logger.info("Updated memory %d: %s", update.memory_id, update.reasoning)
            else:
                logger.warning("Memory %d no longer exists, skipping update", update.memory_id)

        saved_ids = []
        unembedded_ids = []
        failed_facts = []
        for fact in state.get("facts") or []:
            vector = self._embed_fact(fact)
            try:
                with self.store.transaction():
                    memory = self.store.create_memory(
                        session_id,
                        fact,
                        category=self.config.memory_category,
                        confidence=1.0,
                    )
                    if vector:
                        self.store.add_embedding(
                            SearchTable.MEMORIES, memory.id, session_id, vector
                        )
            except Exception as e:
                logger.warning('Failed to save memory "%s": %s', fact, e)
                failed_facts.append(fact)
                continue
            saved_ids.append(memory.id)
            if not vector:
                unembedded_ids.append(memory.id)

        logger.info(
            "Saved %d memories (%d without embedding), updated %d, failed %d",
            len(saved_ids), len(unembedded_ids), len(updated_ids), len(failed_facts),
        )
        return {
            "saved_ids": saved_ids,
            "updated_ids": updated_ids,
            "unembedded_ids": unembedded_ids,
            "failed_facts": failed_facts,
        }

    def _embed_fact(self, fact: str) -> Optional[list[float]]:
        """Validated embedding for a fact, or None (the fact is saved without one)."""
        if self.embeddings is None:
            return None
        try:
            vector = self.embeddings.embed(fact)
            if not vector:
                return None
            return validate_vector(vector, self.embeddings.dimensions)
        except Exception as e:
            logger.warning('Failed to embed memory "%s": %s', fact, e)
            return None


def build_memory_graph(pipeline: MemoryPipeline):
    """Compile the linear extract → validate → consolidate → save graph."""
    workflow = StateGraph(MemoryState)
    workflow.add_node("extract", pipeline.extract)
    workflow.add_node("validate", pipeline.validate)
    workflow.add_node("consolidate", pipeline.consolidate)
    workflow.add_node("save", pipeline.save)
    workflow.add_edge(START, "extract")
    workflow.add_edge("extract", "validate")
    workflow.add_edge("validate", "consolidate")
    workflow.add_edge("consolidate", "save")
    workflow.add_edge("save", END)
    return workflow.compile()
