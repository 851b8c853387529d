"""
Training-data export.

Transforms persisted sessions into flat TrainingExample records, one per
user/assistant exchange, and writes them as JSONL. Output is deterministic:
sessions are ordered by creation time, exchanges by message order, and example
ids are derived from (session id, turn index), so exporting the same sessions
twice yields byte-identical files.
"""

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from chiron.dialogue.aggregator import MetadataAggregator, TurnState
from chiron.exceptions import (
    ChironError,
    CorruptSessionError,
    ExportPartialFailure,
    SessionNotFoundError,
    StorageIOError,
)
from chiron.models.session import SCORE_MAX, Role, Session, SessionQuality
from chiron.models.training import TherapeuticContext, TrainingExample
from chiron.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

EXPORT_NAMESPACE = uuid.UUID("6f1c2d0e-5b7a-4c8e-9a3f-0d2e4b6c8a10")

ALL_SESSIONS = "all"

SessionSelection = Union[str, Iterable[str], None]


def quality_score(quality: SessionQuality) -> float:
    """Collapse session quality into [0, 1]; non-compliant sessions are halved."""
    score = (quality.alliance_score + quality.coherence_score) / (2 * SCORE_MAX)
    if not quality.safety_compliance_flag:
        score *= 0.5
    return round(score, 4)


@dataclass
class ExportReport:
    """Summary of one export run."""

    output_path: Optional[Path] = None
    examples_written: int = 0
    sessions_exported: int = 0
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def partial_failure(self) -> Optional[ExportPartialFailure]:
        if not self.skipped:
            return None
        return ExportPartialFailure(self.skipped, self.sessions_exported)


class TrainingExport:
    """Lazy, restartable sequence of training examples.

    Each iteration re-reads the selected sessions from the store. After an
    iteration, `skipped` and `sessions_read` describe that run.
    """

    def __init__(self, exporter: "TrainingExporter", session_ids: Optional[list[str]]):
        self._exporter = exporter
        self._session_ids = session_ids
        self.skipped: dict[str, str] = {}
        self.sessions_read = 0

    def __iter__(self) -> Iterator[TrainingExample]:
        self.skipped = {}
        self.sessions_read = 0
        return self._exporter._generate(self, self._session_ids)

    def _skip(self, session_id: str, error: ChironError) -> None:
        logger.warning(f"Skipping session {session_id} during export: {error}")
        self.skipped[session_id] = str(error)


class TrainingExporter:
    """Reads sessions through the store and emits training examples."""

    def __init__(self, store: SessionStore, aggregator: Optional[MetadataAggregator] = None):
        self.store = store
        self.aggregator = aggregator or MetadataAggregator()

    def export(self, session_ids: SessionSelection = ALL_SESSIONS) -> TrainingExport:
        """Select sessions to export.

        Args:
            session_ids: Iterable of ids, or "all"/None for every stored session

        Returns:
            A lazy TrainingExport; iterating it raises ExportPartialFailure if
            sessions were requested and none could be read
        """
        if session_ids is None or session_ids == ALL_SESSIONS:
            return TrainingExport(self, None)
        if isinstance(session_ids, str):
            return TrainingExport(self, [session_ids])
        return TrainingExport(self, list(dict.fromkeys(session_ids)))

    def examples_for_session(self, session: Session) -> Iterator[TrainingExample]:
        """Derive examples from one session.

        Crisis turns are not exported, but their effect on the aggregates
        shows in the context snapshots of later examples. Unpaired user
        messages are dropped.
        """
        for state in self.aggregator.iter_turns(session.messages, session_id=session.id):
            if state.is_crisis_turn or state.reply.role != Role.ASSISTANT:
                continue
            yield self._to_example(session.id, state)

    def write_jsonl(
        self,
        output_path: Path,
        session_ids: SessionSelection = ALL_SESSIONS,
        append: bool = False,
    ) -> ExportReport:
        """Write examples as JSON lines.

        A fresh export replaces `output_path` atomically; with `append` the
        lines are added to the end of an existing file.

        Raises:
            ExportPartialFailure: If sessions were requested and none could be read
            StorageIOError: If the output file cannot be written
        """
        output_path = Path(output_path)
        export = self.export(session_ids)
        report = ExportReport(output_path=output_path)

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            if append:
                with open(output_path, "a", encoding="utf-8") as f:
                    report.examples_written = self._write_lines(f, export)
            else:
                report.examples_written = self._write_atomic(output_path, export)
        except OSError as e:
            raise StorageIOError("write export", str(output_path), e) from e

        report.sessions_exported = export.sessions_read
        report.skipped = dict(export.skipped)
        logger.info(
            f"Exported {report.examples_written} examples from "
            f"{report.sessions_exported} session(s) to {output_path}"
        )
        return report

    def _write_atomic(self, output_path: Path, export: TrainingExport) -> int:
        tmp_name: Optional[str] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(output_path.parent),
                prefix=f".{output_path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                written = self._write_lines(tmp, export)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, output_path)
            tmp_name = None
            return written
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    @staticmethod
    def _write_lines(f, export: TrainingExport) -> int:
        written = 0
        for example in export:
            f.write(json.dumps(example.to_dict(), ensure_ascii=False, sort_keys=True))
            f.write("\n")
            written += 1
        return written

    def _generate(
        self, export: TrainingExport, requested: Optional[list[str]]
    ) -> Iterator[TrainingExample]:
        try:
            session_ids = self.store.session_ids() if requested is None else requested
        except StorageIOError as e:
            raise ExportPartialFailure({"*": str(e)}, 0) from e

        ordered = []
        for session_id in session_ids:
            try:
                summary = self.store.summary(session_id)
            except (SessionNotFoundError, CorruptSessionError, StorageIOError) as e:
                export._skip(session_id, e)
                continue
            ordered.append((summary.created_at, session_id))
        ordered.sort()

        for _, session_id in ordered:
            # Re-read: the session may have changed since its summary was taken
            try:
                session = self.store.load(session_id)
            except (SessionNotFoundError, CorruptSessionError, StorageIOError) as e:
                export._skip(session_id, e)
                continue
            export.sessions_read += 1
            yield from self.examples_for_session(session)

        if session_ids and export.sessions_read == 0:
            raise ExportPartialFailure(export.skipped, 0)

    def _to_example(self, session_id: str, state: TurnState) -> TrainingExample:
        metadata = state.metadata
        context = TherapeuticContext(
            primary_concerns=tuple(sorted(metadata.primary_concerns)),
            intervention_techniques=tuple(sorted(metadata.intervention_techniques)),
            therapy_phase=metadata.therapy_phase,
            crisis_indicator_count=metadata.crisis_indicator_count,
        )
        return TrainingExample(
            id=str(uuid.uuid5(EXPORT_NAMESPACE, f"{session_id}:{state.index}")),
            session_id=session_id,
            user_input=state.user_message.content,
            assistant_response=state.reply.content,
            therapeutic_context=context,
            quality_score=quality_score(state.quality),
            therapeutic_tags=tuple(sorted(state.user_message.tags | state.reply.tags)),
            timestamp=state.reply.timestamp,
        )
