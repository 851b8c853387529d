"""Training-data export from persisted sessions."""

from chiron.export.training import (
    ALL_SESSIONS,
    ExportReport,
    TrainingExport,
    TrainingExporter,
    quality_score,
)

__all__ = [
    "ALL_SESSIONS",
    "ExportReport",
    "TrainingExport",
    "TrainingExporter",
    "quality_score",
]
