import pytest

from gate_intel.db.models import AdaptiveThreshold, AutonomousDecisionEvent, Gate
from gate_intel.errors import UnknownEvent
from gate_intel.schemas import QualityRecommendation
from gate_intel.services.quality_service import quality_service

from tests.factories import VENUE, gps_cluster, make_event, no_gps_checkins, offset


def test_no_gps_event_is_insufficient(db_session):
    event = make_event(db_session)
    no_gps_checkins(db_session, event, 40, category="General")
    no_gps_checkins(db_session, event, 40, category="VIP")

    report = quality_service.assess_quality(db_session, event.id)

    assert report.recommendation == QualityRecommendation.insufficient
    assert report.recommended_strategy == "virtual"
    assert report.total_checkins == 80
    assert report.checkins_with_gps == 0
    assert report.checkins_with_usable_gps == 0
    assert report.gps_quality == "no_gps_data"
    assert report.category_counts == {"General": 40, "VIP": 40}
    assert any("virtual gates recommended" in m for m in report.messages)


def test_sufficient_needs_gps_and_categories(db_session):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 40, category="General")
    gps_cluster(db_session, event, offset(VENUE, 200, 0), 40, category="VIP", prefix="vip")

    report = quality_service.assess_quality(db_session, event.id)

    assert report.recommendation == QualityRecommendation.sufficient
    assert report.recommended_strategy == "physical"
    assert report.checkins_with_usable_gps == 80
    assert report.gps_quality == "excellent"
    assert report.location_spread_meters > 1.0


def test_single_category_is_marginal(db_session):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 40, category="General")

    report = quality_service.assess_quality(db_session, event.id)
    assert report.recommendation == QualityRecommendation.marginal


def test_denied_and_inaccurate_checkins_are_not_usable(db_session):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 20, status="denied")
    gps_cluster(db_session, event, VENUE, 20, accuracy=250.0, prefix="far")

    report = quality_service.assess_quality(db_session, event.id)

    assert report.denied_checkins == 20
    assert report.checkins_with_gps == 40
    assert report.checkins_with_usable_gps == 0
    assert report.recommendation == QualityRecommendation.insufficient


def test_assessment_never_mutates(db_session):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 40)

    quality_service.assess_quality(db_session, event.id)

    assert db_session.query(Gate).count() == 0
    assert db_session.query(AutonomousDecisionEvent).count() == 0
    assert db_session.query(AdaptiveThreshold).count() == 0


def test_unknown_event(db_session):
    with pytest.raises(UnknownEvent):
        quality_service.assess_quality(db_session, "missing")
