"""SQLAlchemy models package.

All ORM classes must be registered deterministically so mapper configuration
and Base.metadata do not depend on import order.
"""

from app.models import (  # noqa: F401
    fusion_audit_record,
    fusion_metric,
    fusion_score,
    fusion_weighting,
    score_history,
    source_connection,
)
