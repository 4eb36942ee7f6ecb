"""
Unit tests for weighted consensus aggregation.
"""
import itertools

import pytest

from route_agents.consensus import agent_weight, aggregate_consensus, focus_multiplier
from route_agents.errors import NoConsensusResponsesError
from route_agents.models.protocols import AgentType
from route_agents.models.schemas import (
    ConflictLevel,
    DecisionCriteria,
    ResolutionMethod,
    UserFocus,
    UserPreferenceWeights,
)

from tests.conftest import consensus_request, response


def three_agent_round():
    """Two agents back r1; one backs r2 with a lower score."""
    return [
        response("agent-a", "r1", 0.90, 0.90),
        response("agent-b", "r1", 0.85, 0.80),
        response("agent-c", "r2", 0.70, 0.90),
    ]


class TestWeightedAggregation:
    """Test the weighted tally and conflict classification."""

    def test_weighted_leader_selected(self):
        """Test that r1 leads on weighted score per unit of its own weight."""
        decision = aggregate_consensus(three_agent_round(), consensus_request())

        assert decision.selected_route == "r1"
        assert decision.conflict_level == ConflictLevel.LOW
        assert decision.resolution == ResolutionMethod.WEIGHTED_LEADER

        r1, r2 = decision.rankings
        assert r1.route_id == "r1"
        # (0.90 * 0.90 + 0.85 * 0.80) / (0.90 + 0.80)
        assert r1.normalized_score == pytest.approx(1.49 / 1.7, abs=1e-9)
        assert r1.total_weight == pytest.approx(1.7)
        assert r2.normalized_score == pytest.approx(0.70, abs=1e-9)
        assert r1.vote_count == 2
        assert r1.supporting_agents == ["agent-a", "agent-b"]
        assert decision.score_gap == pytest.approx((1.49 / 1.7 - 0.70) / (1.49 / 1.7), abs=1e-9)
        assert decision.vote_diversity == pytest.approx(1 / 3)
        assert decision.confidence_stdev == pytest.approx(0.0471, abs=1e-3)

    def test_more_votes_do_not_outweigh_a_better_score(self):
        """Test that two mediocre votes lose to one better vote at equal confidence."""
        responses = [
            response("agent-a", "r1", 0.5, 1.0),
            response("agent-b", "r1", 0.5, 1.0),
            response("agent-c", "r2", 0.6, 1.0),
        ]

        decision = aggregate_consensus(responses, consensus_request())
        assert decision.selected_route == "r2"
        assert decision.conflict_level == ConflictLevel.LOW
        assert decision.score_gap == pytest.approx(0.1 / 0.6)

    def test_confidence_weighted_score_and_agent_weights(self):
        """Test the per-route confidence-weighted score and the weight applied to each supporter."""
        weights = {"agent-a": 2.0, "agent-b": 1.0, "agent-c": 1.0}
        decision = aggregate_consensus(three_agent_round(), consensus_request(), weight_for=weights.get)

        r1 = decision.rankings[0]
        assert r1.confidence_weighted_score == pytest.approx(0.90 * 0.90 + 0.85 * 0.80)
        assert r1.agent_weights == pytest.approx({"agent-a": 1.8, "agent-b": 0.8})
        assert r1.weighted_score == pytest.approx(0.90 * 1.8 + 0.85 * 0.8)

    def test_result_independent_of_response_order(self):
        """Test that every permutation of the responses yields the identical decision."""
        request = consensus_request()
        baseline = aggregate_consensus(three_agent_round(), request).model_dump()

        for permutation in itertools.permutations(three_agent_round()):
            assert aggregate_consensus(list(permutation), request).model_dump() == baseline

    def test_tie_goes_to_earlier_route(self):
        """Test that equal normalized scores are ordered by the request's route order."""
        request = consensus_request(route_ids=("r1", "r2"))
        responses = [
            response("agent-a", "r2", 0.8, 0.8),
            response("agent-b", "r1", 0.8, 0.8),
        ]

        decision = aggregate_consensus(responses, request)
        assert [a.route_id for a in decision.rankings] == ["r1", "r2"]
        assert decision.conflict_level == ConflictLevel.HIGH
        assert decision.selected_route == "r1"

    def test_agent_weights_are_applied(self):
        """Test that weight_for shifts a route's score towards its heavier supporters."""
        responses = [
            response("heavy", "r1", 0.9, 0.8),
            response("light", "r1", 0.5, 0.8),
            response("other", "r2", 0.75, 0.8),
        ]
        weights = {"heavy": 3.0, "light": 1.0, "other": 1.0}

        unweighted = aggregate_consensus(responses, consensus_request())
        assert unweighted.selected_route == "r2"

        decision = aggregate_consensus(responses, consensus_request(), weight_for=weights.get)
        # (0.9 * 3 + 0.5 * 1) / 4
        assert decision.rankings[0].normalized_score == pytest.approx(0.8)
        assert decision.selected_route == "r1"

    def test_factor_breakdown_is_weighted_average(self):
        """Test that route breakdowns average the supporters' factors by composite weight."""
        responses = [
            response("agent-a", "r1", 0.8, 0.5, breakdown={"cost": 80.0}),
            response("agent-b", "r1", 0.8, 1.0, breakdown={"cost": 20.0, "time": None}),
        ]

        decision = aggregate_consensus(responses, consensus_request())
        assert decision.rankings[0].breakdown.cost == pytest.approx((80 * 0.5 + 20 * 1.0) / 1.5)
        assert decision.rankings[0].breakdown.time == 0.0


class TestEdgeCases:
    """Test degenerate response sets."""

    def test_single_response(self):
        """Test that one response is accepted as-is with no conflict."""
        decision = aggregate_consensus([response("agent-a", "r2", 0.6, 0.7)], consensus_request())

        assert decision.selected_route == "r2"
        assert decision.conflict_level == ConflictLevel.NONE
        assert decision.resolution == ResolutionMethod.SINGLE_RESPONSE
        assert decision.responses == 1

    def test_empty_responses_rejected(self):
        """Test that aggregation refuses an empty response set."""
        with pytest.raises(NoConsensusResponsesError):
            aggregate_consensus([], consensus_request())

    def test_unknown_routes_are_ignored(self):
        """Test that votes for routes outside the request are dropped."""
        responses = [
            response("agent-a", "r9", 0.99, 0.99),
            response("agent-b", "r1", 0.5, 0.6),
        ]

        decision = aggregate_consensus(responses, consensus_request())
        assert decision.selected_route == "r1"
        assert decision.resolution == ResolutionMethod.SINGLE_RESPONSE

    def test_only_unknown_routes(self):
        """Test that a round with only invalid votes has nothing to aggregate."""
        with pytest.raises(NoConsensusResponsesError):
            aggregate_consensus([response("agent-a", "r9", 0.9, 0.9)], consensus_request())

    def test_selected_route_always_in_request(self):
        """Test that the selected route is one of the candidates for several vote mixes."""
        request = consensus_request(route_ids=("r1", "r2", "r3"))
        mixes = [
            [response("a", "r1", 0.2, 0.1), response("b", "r3", 0.2, 0.1)],
            [response("a", "r2", 0.0, 0.0), response("b", "r3", 0.0, 0.0)],
            [response("a", "r3", 1.0, 1.0), response("b", "r3", 0.1, 0.2), response("c", "r1", 0.9, 0.9)],
        ]
        for responses in mixes:
            assert aggregate_consensus(responses, request).selected_route in request.route_ids()


class TestConflictResolution:
    """Test the tie-break rules applied under high and medium conflict."""

    def test_dominant_criterion_overrides_leader(self):
        """Test that the runner-up wins when it leads the dominant criterion by more than 20 points."""
        request = consensus_request(
            criteria=DecisionCriteria(cost=0.6, time=0.1, security=0.1, reliability=0.1, slippage=0.1)
        )
        responses = [
            response("agent-a", "r1", 0.80, 0.8, breakdown={"cost": 40.0}),
            response("agent-b", "r2", 0.79, 0.8, breakdown={"cost": 90.0}),
        ]

        decision = aggregate_consensus(responses, request)
        assert decision.conflict_level == ConflictLevel.HIGH
        assert decision.resolution == ResolutionMethod.CRITERION_TIEBREAK
        assert decision.selected_route == "r2"

    def test_confidence_breaks_high_conflict(self):
        """Test that a confidence gap above 0.2 picks the more confident route."""
        responses = [
            response("agent-a", "r1", 0.80, 0.9),
            response("agent-b", "r2", 0.81, 0.6),
        ]

        decision = aggregate_consensus(responses, consensus_request())
        assert decision.rankings[0].route_id == "r2"
        assert decision.conflict_level == ConflictLevel.HIGH
        assert decision.resolution == ResolutionMethod.CONFIDENCE_TIEBREAK
        assert decision.selected_route == "r1"

    def test_high_conflict_without_tiebreak_keeps_leader(self):
        """Test that the weighted leader stays when neither tie-break applies."""
        responses = [
            response("agent-a", "r1", 0.80, 0.8),
            response("agent-b", "r2", 0.79, 0.8),
        ]

        decision = aggregate_consensus(responses, consensus_request())
        assert decision.conflict_level == ConflictLevel.HIGH
        assert decision.resolution == ResolutionMethod.WEIGHTED_LEADER
        assert decision.selected_route == "r1"

    def test_medium_conflict_confidence_boost(self):
        """Test that a confident leader under medium conflict is marked as boosted."""
        request = consensus_request(route_ids=("r1", "r2", "r3"))
        responses = [
            response("agent-a", "r1", 0.9, 0.90),
            response("agent-b", "r2", 0.5, 0.85),
            response("agent-c", "r3", 0.5, 0.85),
        ]

        decision = aggregate_consensus(responses, request)
        assert decision.conflict_level == ConflictLevel.MEDIUM
        assert decision.resolution == ResolutionMethod.CONFIDENCE_BOOSTED
        assert decision.selected_route == "r1"

    def test_medium_conflict_without_boost(self):
        """Test that a less confident leader under medium conflict is just the weighted leader."""
        request = consensus_request(route_ids=("r1", "r2", "r3"))
        responses = [
            response("agent-a", "r1", 0.9, 0.70),
            response("agent-b", "r2", 0.5, 0.85),
            response("agent-c", "r3", 0.5, 0.85),
        ]

        decision = aggregate_consensus(responses, request)
        assert decision.conflict_level == ConflictLevel.MEDIUM
        assert decision.resolution == ResolutionMethod.WEIGHTED_LEADER


class TestWeighting:
    """Test agent weights and user-focus multipliers."""

    def test_agent_weight(self):
        """Test priority, health, success rate and failure penalty."""
        assert agent_weight(2, True, 1.0, 0) == pytest.approx(2.0)
        assert agent_weight(2, False, 0.5, 3) == pytest.approx(2 * 0.5 * 0.5 * 0.7)

    def test_failure_penalty_floor(self):
        """Test that the failure penalty never drops below one half."""
        assert agent_weight(1, True, 1.0, 10) == pytest.approx(0.5)
        assert agent_weight(1, True, 1.0, 50) == pytest.approx(0.5)

    def test_focus_multipliers(self):
        """Test the built-in multipliers per focus."""
        security = UserPreferenceWeights(focus=UserFocus.SECURITY)
        speed = UserPreferenceWeights(focus=UserFocus.SPEED)

        assert focus_multiplier(AgentType.RISK_ASSESSMENT, security) == 2.0
        assert focus_multiplier(AgentType.MARKET_INTELLIGENCE, security) == 1.0
        assert focus_multiplier(AgentType.EXECUTION_STRATEGY, speed) == 2.0
        assert focus_multiplier(AgentType.SECURITY, None) == 1.0
        assert focus_multiplier(None, security) == 1.0

    def test_explicit_weightings_override_focus(self):
        """Test that per-type weightings replace the focus multiplier."""
        preferences = UserPreferenceWeights(
            focus=UserFocus.SECURITY,
            weightings={AgentType.RISK_ASSESSMENT: 0.5},
        )
        assert focus_multiplier(AgentType.RISK_ASSESSMENT, preferences) == 0.5

    def test_security_focus_changes_outcome(self):
        """Test that a security focus lifts the route the risk agent scores highly."""
        responses = [
            response("risk", "r1", 0.9, 0.8),
            response("market", "r1", 0.6, 0.8),
            response("executor", "r2", 0.78, 0.8),
        ]
        types = {
            "risk": AgentType.RISK_ASSESSMENT,
            "market": AgentType.MARKET_INTELLIGENCE,
            "executor": AgentType.EXECUTION_STRATEGY,
        }

        balanced = aggregate_consensus(responses, consensus_request(), type_for=types.get)
        assert balanced.selected_route == "r2"

        focused = aggregate_consensus(
            responses,
            consensus_request(user_preferences=UserPreferenceWeights(focus=UserFocus.SECURITY)),
            type_for=types.get,
        )
        assert focused.selected_route == "r1"
