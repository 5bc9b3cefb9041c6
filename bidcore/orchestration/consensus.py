"""Multi-model consensus engine for construction plan analysis."""

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .matching import Cluster, ItemMatcher
from .strategies import MajorityVoteStrategy, Vote, WeightedAverageStrategy
from ..agents.plan_analyzer import AnalysisOptions, PlanAnalyzer
from ..models.items import AnalysisIssue, ExtractedItem
from ..models.results import (
    ConsensusResult,
    Disagreement,
    ModelAgreement,
    ModelOutcome,
    ModelResult,
    SpecializedInsight,
)
from ..providers.base import ModelProvider
from ..providers.images import load_images
from ..utils.coercion import clamp
from ..utils.config import Config, ModelProfile
from ..utils.errors import (
    BidAnalysisError,
    InsufficientConsensusError,
    ProviderError,
    summarize_failure,
)
from ..utils.logging import set_context

logger = logging.getLogger(__name__)

ALL_AGREE = "All models agree - high confidence in results"

ITEM_NUMERIC_FIELDS = ("quantity", "unit_cost", "amount")
ITEM_CATEGORICAL_FIELDS = ("category", "unit")
ISSUE_CATEGORICAL_FIELDS = ("severity", "category")

SUPPORT_BONUS_CAP = 0.2

AnalyzerFactory = Callable[[ModelProvider, ModelProfile], PlanAnalyzer]


class ConsensusEngine:
    """
    Runs the Single-Model Analyzer against several models in parallel and
    merges their results.

    Per-model failures (provider errors, timeouts, unparseable output) are
    recorded and the model is excluded; the round fails with
    InsufficientConsensusError when fewer than ``min_successful_models``
    models succeed.

    Merge rules:
    - numeric fields (quantity, unit_cost, amount): confidence-weighted mean;
      a relative spread above ``numeric_tolerance`` is a disagreement
    - categorical fields (category and unit for items; severity and category
      for issues): majority vote, ties to the highest confidence then the
      lowest model index; any difference is a disagreement
    - text fields and the bounding box come from the representative member
      (highest confidence, then lowest model index)
    - clusters reported by fewer than ceil(min_support_ratio x participants)
      models are left out of the result and listed for review
    """

    def __init__(
        self,
        provider: ModelProvider,
        config: Config,
        analyzer_factory: Optional[AnalyzerFactory] = None
    ):
        """
        Initialize consensus engine.

        Args:
            provider: ModelProvider shared by every analyzer
            config: Loaded Config (roster and consensus settings)
            analyzer_factory: Builds the analyzer for a model profile
        """
        self.provider = provider
        self.config = config
        self.settings = config.consensus
        self.analyzer_factory = analyzer_factory or PlanAnalyzer
        self.matcher = ItemMatcher(
            similarity_threshold=self.settings.similarity_threshold,
            strong_similarity=self.settings.strong_similarity,
            iou_threshold=self.settings.iou_threshold,
            location_overlap_threshold=self.settings.location_overlap,
        )
        self.numeric = WeightedAverageStrategy(tolerance=self.settings.numeric_tolerance)
        self.vote = MajorityVoteStrategy()

        logger.info(
            f"Initialized ConsensusEngine: {len(config.enabled_models)} enabled models, "
            f"max {self.settings.max_models} per round, "
            f"min {self.settings.min_successful_models} successful"
        )

    async def analyze_single(self, images: Sequence[Any], options: AnalysisOptions) -> ModelResult:
        """Run only the top-ranked model for the task, without consensus."""
        profile = self.config.select_models(options.task_type, limit=1)[0]
        analyzer = self.analyzer_factory(self.provider, profile)
        set_context(model_id=profile.model_id, task_type=options.task_type)
        resolved = await asyncio.to_thread(load_images, images)
        return await asyncio.wait_for(
            analyzer.analyze(resolved, options),
            timeout=self.settings.model_timeout,
        )

    async def analyze_with_consensus(
        self,
        images: Sequence[Any],
        options: AnalysisOptions
    ) -> ConsensusResult:
        """
        Analyze plan images with several models and merge the results.

        Args:
            images: Image references or ImageInput objects
            options: AnalysisOptions for the request

        Returns:
            ConsensusResult

        Raises:
            InsufficientConsensusError: If fewer than the minimum models succeed
            ImageLoadError: If an image reference cannot be resolved
        """
        start_time = time.time()
        set_context(task_type=options.task_type)

        profiles = self.config.select_models(options.task_type)
        required = self.settings.min_successful_models
        if len(profiles) < required:
            raise InsufficientConsensusError.from_failures(
                succeeded=0, required=required, invoked=len(profiles), failures={}
            )

        resolved = await asyncio.to_thread(load_images, images)
        logger.info(
            f"Starting consensus round: task={options.task_type}, images={len(resolved)}, "
            f"models={[p.model_id for p in profiles]}"
        )

        outcomes = await self._run_models(profiles, resolved, options)
        successes = [o for o in outcomes if o.ok]
        failures = {o.model_id: summarize_failure(o.error) for o in outcomes if not o.ok}

        if len(successes) < required:
            logger.error(
                f"Consensus round failed: {len(successes)}/{len(outcomes)} models succeeded, "
                f"{required} required"
            )
            raise InsufficientConsensusError.from_failures(
                succeeded=len(successes),
                required=required,
                invoked=len(outcomes),
                failures=failures,
            )

        result = self.merge(outcomes, profiles, options.task_type)

        logger.info(
            f"Consensus round complete in {time.time() - start_time:.3f}s: "
            f"{result.models_succeeded}/{result.models_invoked} models, "
            f"{len(result.items)} items, {len(result.issues)} issues, "
            f"{len(result.disagreements)} disagreements, confidence {result.confidence:.2f}"
        )
        return result

    async def _run_models(
        self,
        profiles: Sequence[ModelProfile],
        images: Sequence[Any],
        options: AnalysisOptions
    ) -> List[ModelOutcome]:
        tasks = [
            asyncio.ensure_future(self._run_one(index, profile, images, options))
            for index, profile in enumerate(profiles)
        ]
        gathered = asyncio.gather(*tasks)
        try:
            return list(await asyncio.shield(gathered))
        except asyncio.CancelledError:
            # Provider calls are billed once sent; let them finish within their timeout
            logger.warning("Consensus round cancelled by caller; waiting for in-flight model calls")
            await asyncio.wait(tasks)
            raise

    async def _run_one(
        self,
        index: int,
        profile: ModelProfile,
        images: Sequence[Any],
        options: AnalysisOptions
    ) -> ModelOutcome:
        """Invoke one analyzer and tag the outcome; never raises for model-side failures."""
        set_context(model_id=profile.model_id)
        analyzer = self.analyzer_factory(self.provider, profile)
        timeout = self.settings.model_timeout
        start_time = time.time()

        try:
            result = await asyncio.wait_for(analyzer.analyze(images, options), timeout=timeout)
            return ModelOutcome(
                model_id=profile.model_id,
                index=index,
                result=result,
                latency=time.time() - start_time,
            )
        except asyncio.TimeoutError:
            error: BaseException = ProviderError.timeout(profile.model_id, timeout)
            logger.warning(f"Model {profile.model_id} timed out after {timeout:g}s; excluded from round")
        except BidAnalysisError as e:
            error = e
            logger.warning(f"Model {profile.model_id} excluded from round: {str(e)}")
        except Exception as e:
            error = e
            logger.error(f"Unexpected failure from model {profile.model_id}: {str(e)}", exc_info=True)

        return ModelOutcome(
            model_id=profile.model_id,
            index=index,
            error=error,
            latency=time.time() - start_time,
        )

    def merge(
        self,
        outcomes: Sequence[ModelOutcome],
        profiles: Sequence[ModelProfile],
        task_type: str
    ) -> ConsensusResult:
        """
        Merge successful model outcomes into one ConsensusResult.

        Args:
            outcomes: Tagged outcomes, one per invoked model
            profiles: Profiles of the invoked models, in roster-rank order
            task_type: Task the round ran for

        Returns:
            ConsensusResult
        """
        successes = [o for o in outcomes if o.ok]
        participants = len(successes)
        min_support = max(1, math.ceil(self.settings.min_support_ratio * participants))

        item_clusters = self.matcher.cluster(
            [(o.index, o.model_id, o.result.items) for o in successes]
        )
        issue_clusters = self.matcher.cluster(
            [(o.index, o.model_id, o.result.issues) for o in successes]
        )

        disagreements: List[Disagreement] = []
        disputed_clusters = 0
        low_support: List[Tuple[str, int]] = []
        kept_clusters: List[Cluster] = []

        items: List[ExtractedItem] = []
        for cluster in item_clusters:
            if cluster.support < min_support:
                low_support.append((cluster.representative.entry.label, cluster.support))
                continue
            item, found = self._merge_item(cluster, participants)
            items.append(item)
            kept_clusters.append(cluster)
            disagreements.extend(found)
            disputed_clusters += 1 if found else 0

        issues: List[AnalysisIssue] = []
        for cluster in issue_clusters:
            if cluster.support < min_support:
                low_support.append((cluster.representative.entry.label, cluster.support))
                continue
            issue, found = self._merge_issue(cluster, participants)
            issues.append(issue)
            kept_clusters.append(cluster)
            disagreements.extend(found)
            disputed_clusters += 1 if found else 0

        confidence = self._overall_confidence(
            items + issues, disputed_clusters, len(kept_clusters), successes
        )
        agreements = self._model_agreements(outcomes, profiles, kept_clusters)
        insights = self._specialized_insights(items, issues, profiles)
        recommendations = self._recommendations(
            disagreements, low_support, participants, outcomes, issues
        )

        return ConsensusResult(
            task_type=task_type,
            items=items,
            issues=issues,
            confidence=confidence,
            disagreements=disagreements,
            model_agreements=agreements,
            recommendations=recommendations,
            specialized_insights=insights,
            low_support_items=[label for label, _ in low_support],
            models_invoked=len(outcomes),
            models_succeeded=participants,
        )

    @staticmethod
    def _votes(cluster: Cluster, field_name: str) -> List[Vote]:
        return [
            Vote(
                value=getattr(member.entry, field_name),
                confidence=member.entry.confidence,
                model_index=member.model_index,
                model_id=member.model_id,
            )
            for member in sorted(cluster.members, key=lambda m: m.model_index)
        ]

    @staticmethod
    def _cluster_confidence(cluster: Cluster, participants: int) -> float:
        """Mean member confidence plus a support bonus of up to 0.2, capped at 1."""
        mean = sum(m.entry.confidence for m in cluster.members) / len(cluster.members)
        support_ratio = cluster.support / participants if participants else 0.0
        return round(min(mean + min(support_ratio * SUPPORT_BONUS_CAP, SUPPORT_BONUS_CAP), 1.0), 4)

    def _merge_item(self, cluster: Cluster, participants: int) -> Tuple[ExtractedItem, List[Disagreement]]:
        rep: ExtractedItem = cluster.representative.entry
        label = rep.label
        disagreements: List[Disagreement] = []
        merged: Dict[str, Any] = {}

        for field_name in ITEM_NUMERIC_FIELDS:
            votes = self._votes(cluster, field_name)
            merged[field_name] = self.numeric.merge(votes)
            if self.numeric.is_disagreement(votes):
                disagreements.append(self._numeric_disagreement(label, field_name, votes))

        for field_name in ITEM_CATEGORICAL_FIELDS:
            votes = self._votes(cluster, field_name)
            merged[field_name] = self.vote.merge(votes)
            if self.vote.is_disagreement(votes):
                disagreements.append(self._categorical_disagreement(label, field_name, votes))

        item = ExtractedItem(
            name=rep.name,
            description=rep.description,
            category=merged["category"] or rep.category,
            subcategory=rep.subcategory,
            quantity=merged["quantity"],
            unit=merged["unit"],
            unit_cost=merged["unit_cost"],
            amount=merged["amount"],
            location=rep.location,
            bounding_box=rep.bounding_box,
            confidence=self._cluster_confidence(cluster, participants),
            cost_code=rep.cost_code or next(
                (m.entry.cost_code for m in cluster.members if m.entry.cost_code), None
            ),
            notes=rep.notes,
            dimensions=rep.dimensions,
            consensus_count=cluster.support,
            source_models=cluster.model_ids,
        )
        return item, disagreements

    def _merge_issue(self, cluster: Cluster, participants: int) -> Tuple[AnalysisIssue, List[Disagreement]]:
        rep: AnalysisIssue = cluster.representative.entry
        disagreements: List[Disagreement] = []
        merged: Dict[str, Any] = {}

        for field_name in ISSUE_CATEGORICAL_FIELDS:
            votes = self._votes(cluster, field_name)
            merged[field_name] = self.vote.merge(votes)
            if self.vote.is_disagreement(votes):
                disagreements.append(self._categorical_disagreement(rep.label, field_name, votes))

        issue = AnalysisIssue(
            description=rep.description,
            severity=merged["severity"] or rep.severity,
            category=merged["category"] or rep.category,
            location=rep.location,
            impact=rep.impact,
            recommendation=rep.recommendation,
            bounding_box=rep.bounding_box,
            confidence=self._cluster_confidence(cluster, participants),
            consensus_count=cluster.support,
            source_models=cluster.model_ids,
        )
        return issue, disagreements

    def _numeric_disagreement(self, label: str, field_name: str, votes: List[Vote]) -> Disagreement:
        cast = [v for v in votes if v.value is not None]
        spread = self.numeric.spread(cast)
        spread_text = "unbounded" if math.isinf(spread) else f"{spread:.0%}"
        low = min(v.value for v in cast)
        high = max(v.value for v in cast)
        pretty = field_name.replace("_", " ")
        return Disagreement(
            type=field_name,
            item=label,
            field=field_name,
            description=(
                f"Models disagree on {pretty} for '{label}': values range from "
                f"{low:g} to {high:g} ({spread_text} spread)"
            ),
            models=[v.model_id for v in cast],
            values={v.model_id: v.value for v in cast},
            recommendation=f"Verify the {pretty} of '{label}' against the drawings",
        )

    def _categorical_disagreement(self, label: str, field_name: str, votes: List[Vote]) -> Disagreement:
        cast = [v for v in votes if v.value is not None]
        options = ", ".join(str(value) for value in self.vote.distinct_values(cast))
        return Disagreement(
            type=field_name,
            item=label,
            field=field_name,
            description=f"Models assign different {field_name} values to '{label}': {options}",
            models=[v.model_id for v in cast],
            values={v.model_id: v.value for v in cast},
            recommendation=f"Confirm the {field_name} of '{label}'",
        )

    def _overall_confidence(
        self,
        entries: Sequence[Any],
        disputed_clusters: int,
        kept_clusters: int,
        successes: Sequence[ModelOutcome]
    ) -> float:
        """
        consensus_count-weighted mean of merged confidences, penalized by the
        share of clusters with a disagreement. Without any merged entry the
        mean of the participating models' confidences is used.
        """
        if not entries:
            scores = [o.result.confidence for o in successes]
            return round(clamp(sum(scores) / len(scores)), 4) if scores else 0.0

        total_weight = sum(e.consensus_count for e in entries)
        weighted = sum(e.confidence * e.consensus_count for e in entries) / total_weight
        disagreement_rate = disputed_clusters / kept_clusters if kept_clusters else 0.0
        penalized = weighted * (1.0 - self.settings.disagreement_penalty * disagreement_rate)
        return round(clamp(penalized), 4)

    @staticmethod
    def _model_agreements(
        outcomes: Sequence[ModelOutcome],
        profiles: Sequence[ModelProfile],
        kept_clusters: Sequence[Cluster]
    ) -> List[ModelAgreement]:
        by_id = {p.model_id: p for p in profiles}
        corroborated: Dict[str, int] = {}
        for cluster in kept_clusters:
            if cluster.support < 2:
                continue
            for model_id in cluster.model_ids:
                corroborated[model_id] = corroborated.get(model_id, 0) + 1

        agreements: List[ModelAgreement] = []
        for outcome in sorted(outcomes, key=lambda o: o.index):
            profile = by_id.get(outcome.model_id)
            specialization = profile.specialization if profile else "general"
            strengths = list(profile.strengths) if profile else []
            weaknesses = list(profile.weaknesses) if profile else []

            if not outcome.ok:
                agreements.append(ModelAgreement(
                    model=outcome.model_id,
                    specialization=specialization,
                    items_found=0,
                    confidence=0.0,
                    strengths=strengths,
                    weaknesses=weaknesses,
                    participated=False,
                    error=summarize_failure(outcome.error),
                ))
                continue

            result = outcome.result
            found = len(result.items) + len(result.issues)
            agreements.append(ModelAgreement(
                model=outcome.model_id,
                specialization=specialization,
                items_found=len(result.items),
                issues_found=len(result.issues),
                confidence=result.confidence,
                strengths=strengths,
                weaknesses=weaknesses,
                agreement_rate=round(corroborated.get(outcome.model_id, 0) / found, 4) if found else 0.0,
            ))
        return agreements

    @staticmethod
    def _specialized_insights(
        items: Sequence[ExtractedItem],
        issues: Sequence[AnalysisIssue],
        profiles: Sequence[ModelProfile]
    ) -> List[SpecializedInsight]:
        insights: List[SpecializedInsight] = []

        compliance = [i for i in issues if "code" in i.category or "compliance" in i.category]
        if compliance:
            insights.append(SpecializedInsight(
                type="code_compliance",
                title="Code compliance concerns",
                description=f"{len(compliance)} potential code compliance issue(s) identified",
                models=sorted({m for i in compliance for m in i.source_models}),
                items=[i.description for i in compliance],
            ))

        priced = sorted(
            (i for i in items if i.amount), key=lambda i: i.amount, reverse=True
        )[:3]
        if priced:
            cost_models = [p.model_id for p in profiles if any("cost" in s for s in p.strengths)]
            drivers = ", ".join(f"{i.label} (${i.amount:,.2f})" for i in priced)
            insights.append(SpecializedInsight(
                type="cost_optimization",
                title="Largest cost drivers",
                description=f"Review pricing and alternates for the largest cost drivers: {drivers}",
                models=sorted({m for i in priced for m in i.source_models} | set(cost_models)),
                items=[i.label for i in priced],
            ))

        critical = [i for i in issues if i.severity == "critical"]
        if critical:
            insights.append(SpecializedInsight(
                type="quality_improvement",
                title="Critical plan issues",
                description=f"{len(critical)} critical issue(s) should be resolved before bidding",
                models=sorted({m for i in critical for m in i.source_models}),
                items=[i.description for i in critical],
            ))

        return insights

    @staticmethod
    def _recommendations(
        disagreements: Sequence[Disagreement],
        low_support: Sequence[Tuple[str, int]],
        participants: int,
        outcomes: Sequence[ModelOutcome],
        issues: Sequence[AnalysisIssue]
    ) -> List[str]:
        recommendations: List[str] = [d.recommendation for d in disagreements]

        for label, support in low_support:
            recommendations.append(
                f"Review '{label}': reported by only {support} of {participants} models"
            )

        for outcome in outcomes:
            if not outcome.ok:
                recommendations.append(
                    f"{outcome.model_id} did not contribute "
                    f"({summarize_failure(outcome.error).split(':')[0]}); "
                    f"results are based on {participants} of {len(outcomes)} models"
                )

        for issue in issues:
            if issue.severity == "critical":
                recommendations.append(f"Resolve critical issue: {issue.description}")

        # Keep first occurrence order
        unique = list(dict.fromkeys(recommendations))
        return unique or [ALL_AGREE]
