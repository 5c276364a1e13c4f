"""
Tests for the learning loop models: ResearchOutcome, ToolEffectiveness, ResearchAnomaly.

Covers:
- Defaults applied on insert
- to_dict serialization
- Unique (scope, tool_type, period) constraint
- At most one open anomaly per (organization, type)
"""

from datetime import UTC, date, datetime

import pytest
from sqlalchemy.exc import IntegrityError

from src.models.anomaly import AnomalySeverity, AnomalyType, ResearchAnomaly
from src.models.outcome import OutcomeQuality, ResearchOutcome
from src.models.tool_effectiveness import ToolEffectiveness

# =============================================================================
# ResearchOutcome
# =============================================================================


@pytest.mark.asyncio
async def test_outcome_defaults_and_to_dict(db_session):
    sold_at = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)
    outcome = ResearchOutcome(
        organization_id="org-1",
        item_id="item-1",
        sold_price=99.5,
        sold_at=sold_at,
        outcome_quality=OutcomeQuality.GOOD.value,
        tools_used=[{"tool_type": "web_search", "confidence": 0.7}],
    )
    db_session.add(outcome)
    await db_session.commit()

    assert outcome.id is not None
    assert outcome.was_returned is False

    data = outcome.to_dict()
    assert data["id"] == outcome.id
    assert data["sold_at"] == "2026-03-18T12:00:00+00:00"
    assert data["tools_used"] == [{"tool_type": "web_search", "confidence": 0.7}]
    assert data["returned_at"] is None
    assert data["outcome_quality"] == "good"


# =============================================================================
# ToolEffectiveness
# =============================================================================


def _effectiveness(scope: str = "org-1") -> ToolEffectiveness:
    return ToolEffectiveness(
        scope=scope,
        tool_type="web_search",
        period_start=date(2026, 3, 1),
        period_end=date(2026, 3, 31),
    )


@pytest.mark.asyncio
async def test_effectiveness_defaults(db_session):
    record = _effectiveness()
    db_session.add(record)
    await db_session.commit()

    assert record.total_uses == 0
    assert record.confidence_sum == 0.0
    assert record.current_weight == 1.0
    assert record.suggested_weight is None


@pytest.mark.asyncio
async def test_effectiveness_unique_per_scope_tool_period(db_session):
    db_session.add(_effectiveness())
    await db_session.commit()

    db_session.add(_effectiveness())
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()

    db_session.add(_effectiveness(scope="org-2"))
    await db_session.commit()


# =============================================================================
# ResearchAnomaly
# =============================================================================


@pytest.mark.asyncio
async def test_anomaly_to_dict(db_session):
    detected = datetime(2026, 3, 18, 3, 0, tzinfo=UTC)
    anomaly = ResearchAnomaly(
        organization_id="org-1",
        detected_at=detected,
        anomaly_type=AnomalyType.SLOW_SALES.value,
        severity=AnomalySeverity.INFO.value,
        description="Average time to sell is 40.0 days across 5 recent sales.",
        affected_items=["item-1"],
        pattern={"avg_days_to_sell": 40.0},
    )
    db_session.add(anomaly)
    await db_session.commit()

    data = anomaly.to_dict()
    assert data["anomaly_type"] == "slow_sales"
    assert data["severity"] == "info"
    assert data["resolved"] is False
    assert data["affected_items"] == ["item-1"]
    assert data["detected_at"] == "2026-03-18T03:00:00+00:00"


def _price_anomaly(resolved: bool = False) -> ResearchAnomaly:
    return ResearchAnomaly(
        organization_id="org-1",
        detected_at=datetime(2026, 3, 18, 3, 0, tzinfo=UTC),
        anomaly_type=AnomalyType.PRICE_DEVIATION.value,
        severity=AnomalySeverity.INFO.value,
        description="Average price deviation of 20.0% across 10 recent sales.",
        affected_items=[],
        resolved=resolved,
    )


@pytest.mark.asyncio
async def test_one_open_anomaly_per_org_and_type(db_session):
    db_session.add_all([
        _price_anomaly(resolved=True),
        _price_anomaly(resolved=True),
        _price_anomaly(),
    ])
    await db_session.commit()

    db_session.add(_price_anomaly())
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()
