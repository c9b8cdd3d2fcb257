"""
Gate Derivation Pipeline

Combines physical and virtual candidates, ranks them, proposes merges for
over-segmented physical clusters and decides each gate's enforcement.

Two modes share the same computation:
- preview: read-only, idempotent, takes no lock
- execute: applies merge suggestions and persists gates, their lifecycle
  state and their gate_creation decisions in one transaction, at most
  once per (event_id, run_token)
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from gate_intel.config import settings
from gate_intel.db.models import AutonomousDecisionEvent, Gate, GatePipelineRun, utcnow
from gate_intel.errors import InsufficientData, PipelineExecutionFailed
from gate_intel.schemas import (
    CheckinEvent, DecisionEventSummary, DecisionEventType, DerivationMethod,
    DuplicateCandidate, EnforcementStrength, ExecuteResult, GateCandidate, GateKind, GateSummary,
    MergeAction, MergeSuggestion, PreviewResult, QualityRecommendation,
    RankedGate, ThresholdConfig, VenueConfig
)
from gate_intel.services import scoring
from gate_intel.services.decision_log_service import decision_log_service
from gate_intel.services.event_context import event_context_service
from gate_intel.services.lifecycle_service import lifecycle_service
from gate_intel.services.locks import pipeline_lock_service
from gate_intel.services.physical_clusterer import physical_clusterer
from gate_intel.services.quality_service import quality_service
from gate_intel.services.virtual_clusterer import virtual_clusterer

logger = logging.getLogger(__name__)


def enforcement_for(
    confidence_score: float,
    purity_score: float,
    thresholds: ThresholdConfig
) -> EnforcementStrength:
    """
    strict: confidence >= 0.85 and purity >= 0.9
    advisory: confidence >= the event's confidence threshold
    none: otherwise, or whenever confidence is below the threshold or
    purity does not exceed the enforcement floor
    """
    if (confidence_score < thresholds.confidence_threshold
            or purity_score <= settings.ENFORCEMENT_PURITY_FLOOR):
        return EnforcementStrength.none
    if confidence_score >= settings.STRICT_CONFIDENCE and purity_score >= settings.STRICT_PURITY:
        return EnforcementStrength.strict
    return EnforcementStrength.advisory


def rank_key(candidate: GateCandidate) -> Tuple[float, int, str]:
    return (-candidate.confidence_score, -candidate.member_count, candidate.cluster_id)


def _arrival_key(checkin: CheckinEvent):
    return (checkin.timestamp, checkin.wristband_id, checkin.id)


class GatePipelineService:

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------
    def preview_gates(
        self,
        db: Session,
        event_id: str,
        timeout: Optional[float] = None
    ) -> PreviewResult:
        event = event_context_service.get_event(db, event_id)
        checkins = event_context_service.load_checkins(db, event_id)
        venue = event_context_service.venue_config(event)
        thresholds = event_context_service.threshold_config(db, event)
        existing = self._existing_gates(db, event_id)

        return self.derive(
            event_id, checkins, venue, thresholds,
            timeout=timeout,
            name_offsets=self._name_offsets(existing),
            existing=existing,
        )

    def derive(
        self,
        event_id: str,
        checkins: Sequence[CheckinEvent],
        venue: VenueConfig,
        thresholds: ThresholdConfig,
        timeout: Optional[float] = None,
        name_offsets: Optional[Dict[str, int]] = None,
        existing: Sequence[Gate] = ()
    ) -> PreviewResult:
        """
        Pure derivation over one event's check-ins.

        Candidates matching one of ``existing`` are reported as duplicates
        instead of ranked, so proposed names line up with what execute creates.
        """
        report = quality_service.assess(event_id, list(checkins), venue)
        timeout = settings.PIPELINE_TIMEOUT_SEC if timeout is None else timeout

        executor = ThreadPoolExecutor(max_workers=settings.PIPELINE_WORKERS)
        try:
            physical_future = executor.submit(physical_clusterer.cluster, checkins, venue)
            virtual_future = executor.submit(virtual_clusterer.cluster, checkins, venue)
            done, pending = wait([physical_future, virtual_future], timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if pending:
            logger.warning(f"Gate clustering for event {event_id} exceeded {timeout}s")
            return PreviewResult(
                event_id=event_id,
                quality_report=report,
                timed_out=True,
                warnings=[f"Clustering did not finish within {timeout}s; quality report only"],
            )

        physical = physical_future.result()
        virtual = virtual_future.result()
        suggestions = self.merge_suggestions(physical.candidates, thresholds)
        ranked_candidates, duplicates = [], []
        for candidate in physical.candidates + virtual.candidates:
            gate = self._matching_gate(candidate, existing, thresholds)
            if gate is None:
                ranked_candidates.append(candidate)
            else:
                duplicates.append(DuplicateCandidate(
                    cluster_id=candidate.cluster_id,
                    existing_gate_id=gate.id,
                    existing_gate_name=gate.name,
                ))
        ranked = self.rank(ranked_candidates, thresholds, name_offsets)

        warnings = []
        if report.recommendation == QualityRecommendation.insufficient:
            warnings.append("Insufficient check-in data; gate confidence will be low")
        over_segmented = any(s.recommended_action == MergeAction.merge for s in suggestions)
        if over_segmented:
            warnings.append(
                f"{sum(s.recommended_action == MergeAction.merge for s in suggestions)} physical "
                f"cluster pair(s) closer than {thresholds.duplicate_distance_meters}m should be merged"
            )
        if duplicates:
            warnings.append(
                f"{len(duplicates)} candidate(s) match existing gates and will be skipped on execute"
            )
        elif not ranked:
            warnings.append("No gates discoverable from the available check-ins")

        return PreviewResult(
            event_id=event_id,
            quality_report=report,
            physical_candidates=physical.candidates,
            virtual_candidates=virtual.candidates,
            merge_suggestions=suggestions,
            ranked_gates=ranked,
            duplicate_candidates=duplicates,
            noise_points=physical.noise_count,
            over_segmented=over_segmented,
            warnings=warnings,
        )

    def merge_suggestions(
        self,
        candidates: Sequence[GateCandidate],
        thresholds: ThresholdConfig
    ) -> List[MergeSuggestion]:
        physical = sorted(
            (c for c in candidates if c.kind == GateKind.physical and c.centroid),
            key=lambda c: c.cluster_id
        )
        suggestions = []
        for i, a in enumerate(physical):
            for b in physical[i + 1:]:
                distance = scoring.haversine_meters(
                    (a.centroid.latitude, a.centroid.longitude),
                    (b.centroid.latitude, b.centroid.longitude)
                )
                if distance > thresholds.duplicate_distance_meters:
                    continue
                union = sorted(a.members + b.members, key=_arrival_key)
                combined = round(scoring.purity(union), 4)
                floor = round(min(a.purity_score, b.purity_score) - settings.MERGE_PURITY_TOLERANCE, 4)
                suggestions.append(MergeSuggestion(
                    cluster_a=a.cluster_id,
                    cluster_b=b.cluster_id,
                    distance_meters=round(distance, 2),
                    purity_a=a.purity_score,
                    purity_b=b.purity_score,
                    combined_purity=combined,
                    purity_floor=floor,
                    recommended_action=MergeAction.merge if combined >= floor else MergeAction.keep_separate,
                ))
        return suggestions

    def rank(
        self,
        candidates: Sequence[GateCandidate],
        thresholds: ThresholdConfig,
        name_offsets: Optional[Dict[str, int]] = None
    ) -> List[RankedGate]:
        ordinals = dict(name_offsets or {})
        ranked = []
        for position, candidate in enumerate(sorted(candidates, key=rank_key), start=1):
            ordinals[candidate.dominant_category] = ordinals.get(candidate.dominant_category, 0) + 1
            strength = enforcement_for(candidate.confidence_score, candidate.purity_score, thresholds)
            ranked.append(RankedGate(
                rank=position,
                cluster_id=candidate.cluster_id,
                kind=candidate.kind,
                proposed_name=f"{candidate.dominant_category} Gate {ordinals[candidate.dominant_category]}",
                dominant_category=candidate.dominant_category,
                member_count=candidate.member_count,
                confidence_score=candidate.confidence_score,
                purity_score=candidate.purity_score,
                enforcement_strength=strength,
                should_enforce=strength != EnforcementStrength.none,
                centroid=candidate.centroid,
            ))
        return ranked

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------
    def execute_gate_pipeline(
        self,
        db: Session,
        event_id: str,
        run_token: str,
        timeout: Optional[float] = None,
        require_sufficient_data: bool = False
    ) -> ExecuteResult:
        """
        Derive and persist gates for ``event_id``.

        Replays of a completed ``run_token`` return the stored result without
        mutating anything. Raises PipelineBusy when another execute holds the
        event lock and PipelineExecutionFailed when the transaction aborts.
        """
        event = event_context_service.get_event(db, event_id)
        replay = self._replay(db, event_id, run_token)
        if replay:
            return replay

        with pipeline_lock_service.acquire(event_id):
            replay = self._replay(db, event_id, run_token)
            if replay:
                return replay

            checkins = event_context_service.load_checkins(db, event_id)
            venue = event_context_service.venue_config(event)
            thresholds = event_context_service.threshold_config(db, event)
            existing = self._existing_gates(db, event_id)

            preview = self.derive(event_id, checkins, venue, thresholds, timeout=timeout)
            if preview.timed_out:
                raise PipelineExecutionFailed(
                    f"Gate clustering for event {event_id} timed out; nothing was persisted",
                    {"event_id": event_id, "run_token": run_token}
                )
            if (require_sufficient_data
                    and preview.quality_report.recommendation == QualityRecommendation.insufficient):
                raise InsufficientData(
                    f"Event {event_id} has insufficient check-in data for gate derivation",
                    {"event_id": event_id, "messages": preview.quality_report.messages}
                )

            try:
                result = self._persist(db, event_id, run_token, preview, venue, thresholds, existing)
            except IntegrityError:
                db.rollback()
                # Another process completed the same token first
                replay = self._replay(db, event_id, run_token)
                if replay:
                    return replay
                logger.error(f"Gate pipeline for event {event_id} aborted on integrity error")
                raise PipelineExecutionFailed(
                    f"Gate pipeline for event {event_id} failed; no gates were persisted",
                    {"event_id": event_id, "run_token": run_token}
                )
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Gate pipeline for event {event_id} aborted: {e}")
                raise PipelineExecutionFailed(
                    f"Gate pipeline for event {event_id} failed; no gates were persisted",
                    {"event_id": event_id, "run_token": run_token}
                ) from e

        logger.info(
            f"Gate pipeline run {run_token} for event {event_id}: "
            f"{len(result.created_gates)} gates created, {len(result.skipped_candidates)} skipped"
        )
        return result

    def _persist(
        self,
        db: Session,
        event_id: str,
        run_token: str,
        preview: PreviewResult,
        venue: VenueConfig,
        thresholds: ThresholdConfig,
        existing: List[Gate]
    ) -> ExecuteResult:
        candidates, merged_groups = self._apply_merges(
            preview.physical_candidates, preview.merge_suggestions, venue
        )
        candidates = candidates + list(preview.virtual_candidates)

        survivors, skipped = [], []
        for candidate in candidates:
            if self._matching_gate(candidate, existing, thresholds) is not None:
                skipped.append(candidate.cluster_id)
            else:
                survivors.append(candidate)

        ranked = self.rank(survivors, thresholds, self._name_offsets(existing))
        by_id = {c.cluster_id: c for c in survivors}
        groups_by_id = {"+".join(group): group for group in merged_groups}

        run = GatePipelineRun(event_id=event_id, run_token=run_token, status="completed")
        db.add(run)
        db.flush()

        gates: List[Gate] = []
        decisions: List[AutonomousDecisionEvent] = []
        for entry in ranked:
            candidate = by_id[entry.cluster_id]
            gate = Gate(
                event_id=event_id,
                name=entry.proposed_name,
                kind=candidate.kind.value,
                latitude=candidate.centroid.latitude if candidate.centroid else None,
                longitude=candidate.centroid.longitude if candidate.centroid else None,
                dominant_category=candidate.dominant_category,
                member_count=candidate.member_count,
                confidence_score=candidate.confidence_score,
                purity_score=candidate.purity_score,
                enforcement_strength=entry.enforcement_strength.value,
                should_enforce=entry.should_enforce,
                derivation_method=candidate.derivation_method.value,
                evidence=self._evidence(candidate, entry.rank),
                pipeline_run_id=run.id,
                created_at=utcnow(),
            )
            db.add(gate)
            db.flush()
            db.add(lifecycle_service.new_state(gate, thresholds))

            group = groups_by_id.get(candidate.cluster_id)
            if group:
                decisions.append(decision_log_service.record(
                    db,
                    event_id=event_id,
                    gate_id=gate.id,
                    event_type=DecisionEventType.gate_merge,
                    action=f"merge clusters {', '.join(group)} into '{gate.name}'",
                    reasoning=(
                        f"{len(group)} physical clusters within "
                        f"{thresholds.duplicate_distance_meters}m with compatible purity; "
                        f"merged purity {candidate.purity_score}"
                    ),
                    confidence_score=candidate.confidence_score,
                    thresholds=thresholds,
                    details={"run_token": run_token, "clusters": group},
                ))
            decisions.append(decision_log_service.record(
                db,
                event_id=event_id,
                gate_id=gate.id,
                event_type=DecisionEventType.gate_creation,
                action=f"create {candidate.kind.value} gate '{gate.name}'",
                reasoning=self._reasoning(candidate, entry),
                confidence_score=candidate.confidence_score,
                thresholds=thresholds,
                details={"run_token": run_token, "cluster_id": candidate.cluster_id},
            ))
            gates.append(gate)

        run.gate_ids = [g.id for g in gates]
        run.decision_event_ids = [d.id for d in decisions]
        run.summary = {"skipped_candidates": skipped, "merged_clusters": merged_groups}
        db.commit()

        return ExecuteResult(
            event_id=event_id,
            run_token=run_token,
            created_gates=[GateSummary.model_validate(g) for g in gates],
            decision_events=[DecisionEventSummary.model_validate(d) for d in decisions],
            skipped_candidates=skipped,
            merged_clusters=merged_groups,
        )

    def _apply_merges(
        self,
        physical: Sequence[GateCandidate],
        suggestions: Sequence[MergeSuggestion],
        venue: VenueConfig
    ) -> Tuple[List[GateCandidate], List[List[str]]]:
        """Union-find over ``merge`` suggestions; returns rescored candidates."""
        parent = {c.cluster_id: c.cluster_id for c in physical}

        def find(cluster_id: str) -> str:
            while parent[cluster_id] != cluster_id:
                parent[cluster_id] = parent[parent[cluster_id]]
                cluster_id = parent[cluster_id]
            return cluster_id

        for suggestion in suggestions:
            if suggestion.recommended_action == MergeAction.merge:
                a, b = find(suggestion.cluster_a), find(suggestion.cluster_b)
                if a != b:
                    parent[max(a, b)] = min(a, b)

        groups: Dict[str, List[GateCandidate]] = {}
        for candidate in physical:
            groups.setdefault(find(candidate.cluster_id), []).append(candidate)

        result, merged_groups = [], []
        for root in sorted(groups):
            members = groups[root]
            if len(members) == 1:
                result.append(members[0])
                continue
            ids = sorted(c.cluster_id for c in members)
            union = sorted((m for c in members for m in c.members), key=_arrival_key)
            result.append(physical_clusterer.candidate_from_members(
                "+".join(ids), union, venue, method=DerivationMethod.dbscan_merged
            ))
            merged_groups.append(ids)
        return result, merged_groups

    @staticmethod
    def _matching_gate(
        candidate: GateCandidate,
        existing: Sequence[Gate],
        thresholds: ThresholdConfig
    ) -> Optional[Gate]:
        for gate in existing:
            if gate.kind != candidate.kind.value:
                continue
            if candidate.kind == GateKind.virtual:
                if gate.dominant_category == candidate.dominant_category:
                    return gate
            elif gate.latitude is not None and candidate.centroid:
                distance = scoring.haversine_meters(
                    (gate.latitude, gate.longitude),
                    (candidate.centroid.latitude, candidate.centroid.longitude)
                )
                if distance <= thresholds.duplicate_distance_meters:
                    return gate
        return None

    @staticmethod
    def _existing_gates(db: Session, event_id: str) -> List[Gate]:
        return db.query(Gate).filter(Gate.event_id == event_id).order_by(Gate.created_at.asc()).all()

    @staticmethod
    def _name_offsets(existing: Sequence[Gate]) -> Dict[str, int]:
        offsets: Dict[str, int] = {}
        for gate in existing:
            offsets[gate.dominant_category] = offsets.get(gate.dominant_category, 0) + 1
        return offsets

    @staticmethod
    def _evidence(candidate: GateCandidate, rank: int) -> dict:
        return {
            "cluster_id": candidate.cluster_id,
            "rank": rank,
            "category_counts": candidate.category_counts,
            "category_entropy": candidate.category_entropy,
            "density": candidate.density,
            "gps_accuracy_p50": candidate.gps_accuracy_p50,
            "radius_p50_meters": candidate.radius_p50_meters,
            "first_seen": candidate.first_seen.isoformat() if candidate.first_seen else None,
            "last_seen": candidate.last_seen.isoformat() if candidate.last_seen else None,
        }

    @staticmethod
    def _reasoning(candidate: GateCandidate, entry: RankedGate) -> str:
        parts = [
            f"{candidate.member_count} check-ins via {candidate.derivation_method.value}",
            f"dominant category {candidate.dominant_category} (purity {candidate.purity_score})",
            f"confidence {candidate.confidence_score}",
        ]
        if candidate.radius_p50_meters is not None:
            parts.append(
                f"median radius {candidate.radius_p50_meters}m, "
                f"median GPS accuracy {candidate.gps_accuracy_p50}m"
            )
        parts.append(f"enforcement {entry.enforcement_strength.value}")
        return "; ".join(parts)

    def _replay(self, db: Session, event_id: str, run_token: str) -> Optional[ExecuteResult]:
        run = db.query(GatePipelineRun).filter(
            GatePipelineRun.event_id == event_id,
            GatePipelineRun.run_token == run_token
        ).first()
        if not run:
            return None

        gates = {g.id: g for g in db.query(Gate).filter(Gate.id.in_(run.gate_ids or [])).all()}
        decisions = {
            d.id: d for d in db.query(AutonomousDecisionEvent).filter(
                AutonomousDecisionEvent.id.in_(run.decision_event_ids or [])
            ).all()
        }
        summary = run.summary or {}
        logger.info(f"Replaying gate pipeline run {run_token} for event {event_id}")
        return ExecuteResult(
            event_id=event_id,
            run_token=run_token,
            replayed=True,
            created_gates=[GateSummary.model_validate(gates[i]) for i in run.gate_ids or [] if i in gates],
            decision_events=[
                DecisionEventSummary.model_validate(decisions[i])
                for i in run.decision_event_ids or [] if i in decisions
            ],
            skipped_candidates=summary.get("skipped_candidates", []),
            merged_clusters=summary.get("merged_clusters", []),
        )


# Singleton instance
gate_pipeline_service = GatePipelineService()
