from phaseguard.backlog.analysis import (
    ANALYSIS_PHASES,
    FEATURE_PHASES,
    IMPLEMENTATION_PHASES,
    compute_start_phase,
    derive_analysis_status,
    derive_backlog_marker,
    generate_slug,
    validate_phases_completed,
)
from phaseguard.backlog.records import AnalysisRecord, read_meta, write_meta
from phaseguard.backlog.resolver import Ambiguous, ResolvedItem, resolve_item
from phaseguard.backlog.staleness import check_blast_radius_staleness, check_staleness
from phaseguard.backlog.tiers import compute_recommended_tier

__all__ = [
    "ANALYSIS_PHASES",
    "FEATURE_PHASES",
    "IMPLEMENTATION_PHASES",
    "Ambiguous",
    "AnalysisRecord",
    "ResolvedItem",
    "check_blast_radius_staleness",
    "check_staleness",
    "compute_recommended_tier",
    "compute_start_phase",
    "derive_analysis_status",
    "derive_backlog_marker",
    "generate_slug",
    "read_meta",
    "resolve_item",
    "validate_phases_completed",
    "write_meta",
]
