"""
Tests for the dialog graph: routing, the question / confirmation / ready
decision, confirmation replies and rule-based itinerary modification.
"""
import asyncio
from datetime import date

import pytest

from conftest import TODAY, FakeLLM
from conversation_state import merge_context
from errors import ParseFailure
from graph import (
    DialogController,
    apply_intent,
    apply_modification,
    merge_destinations,
    route_by_classification,
)
from input_classifier import ClassificationResult
from stategraph import (
    CombinedItinerary,
    ConversationContext,
    DestinationSpec,
    InputType,
    Phase,
    TravelIntent,
)
from trip_extractor import TripExtractor


def _controller(state_manager, llm=None):
    llm = llm or FakeLLM()
    extractor = TripExtractor(llm, max_llm_retries=1, retry_delay_base=0)
    return DialogController(state_manager, extractor, llm, max_llm_retries=1, retry_delay_base=0)


def _turn(controller, message, session_id="s1", **kwargs):
    kwargs.setdefault("today", TODAY)
    return asyncio.run(controller.process_turn(session_id, message, **kwargs))


def _dest(name, days, order, confirmed=True):
    return DestinationSpec(name=name, day_count=days, order=order, confirmed=confirmed)


def _seed_itinerary(state_manager, session_id="s1"):
    state_manager.update(
        session_id,
        itinerary=CombinedItinerary(
            title="Paris & Rome Journey",
            destination="Paris, Rome",
            start_date="2026-03-16",
            end_date="2026-03-23",
            total_days=8,
        ),
        context_updates={"destinations": [_dest("Paris", 5, 1), _dest("Rome", 3, 2)]},
    )


# ---------------------------------------------------------------------------
# Ready / question / confirmation
# ---------------------------------------------------------------------------

class TestDecision:
    def test_structured_request_is_ready(self, state_manager):
        llm = FakeLLM()
        turn = _turn(_controller(state_manager, llm), "5 days in Paris, then 3 days in Rome")
        assert turn.response_type == "ready"
        assert turn.message == "Great! Planning your 8-day trip: Paris (5 days) and Rome (3 days)."
        request = turn.generation_request
        assert [(d.name, d.day_count, d.order) for d in request.destinations] == [("Paris", 5, 1), ("Rome", 3, 2)]
        assert request.start_date == date(2026, 3, 16)
        assert llm.calls == []

    def test_explicit_start_date(self, state_manager):
        turn = _turn(_controller(state_manager), "5 days in Paris starting June 3")
        assert turn.generation_request.start_date == date(2026, 6, 3)

    def test_budget_flows_into_request(self, state_manager):
        turn = _turn(_controller(state_manager), "5 days in Paris, something cheap")
        assert turn.generation_request.budget_hint == "budget"

    def test_missing_days_then_follow_up(self, state_manager):
        llm = FakeLLM([{"destinations": [{"name": "Japan", "day_count": 0, "order": 1}]}])
        controller = _controller(state_manager, llm)

        first = _turn(controller, "I want to go to Japan")
        assert first.response_type == "question"
        assert first.message == "How many days would you like to spend in Japan?"
        assert first.missing_fields == ["day_count:Japan"]

        second = _turn(controller, "10 days")
        assert second.response_type == "ready"
        assert [(d.name, d.day_count) for d in second.generation_request.destinations] == [("Japan", 10)]

    def test_vague_region_asks_for_cities(self, state_manager):
        llm = FakeLLM([{"destinations": [{"name": "Europe", "day_count": 0, "order": 1}]}])
        turn = _turn(_controller(state_manager, llm), "Europe")
        assert turn.response_type == "question"
        assert turn.message.startswith("Europe is a big place!")

    def test_nothing_extracted_asks_where(self, state_manager):
        turn = _turn(_controller(state_manager, FakeLLM([{"destinations": []}])), "Hello")
        assert turn.response_type == "question"
        assert turn.message == "Where would you like to travel?"
        assert turn.missing_fields == ["destinations"]

    def test_extraction_failure_is_a_clarifying_question(self, state_manager):
        turn = _turn(_controller(state_manager, FakeLLM()), "Hello")
        assert turn.response_type == "question"
        assert turn.message.startswith("I couldn't quite catch where you'd like to go")
        assert state_manager.get("s1").metadata.errors


class TestConfirmation:
    def test_assumed_split_needs_confirmation(self, state_manager):
        turn = _turn(_controller(state_manager), "2 weeks in Lisbon and Granada")
        assert turn.response_type == "confirmation"
        assert "Lisbon (7 days) and Granada (7 days), 14 days in total" in turn.message
        assert state_manager.get("s1").context.phase == Phase.CONFIRMING

    def test_yes_confirms_and_is_ready(self, state_manager):
        controller = _controller(state_manager)
        _turn(controller, "2 weeks in Lisbon and Granada")
        turn = _turn(controller, "yes")
        assert turn.response_type == "ready"
        assert all(d.confirmed for d in turn.generation_request.destinations)
        assert sum(d.day_count for d in turn.generation_request.destinations) == 14

    def test_no_asks_for_day_counts(self, state_manager):
        controller = _controller(state_manager)
        _turn(controller, "2 weeks in Lisbon and Granada")
        turn = _turn(controller, "no")
        assert turn.response_type == "question"
        assert turn.missing_fields == ["day_count"]

    def test_conflicting_totals_are_surfaced(self, state_manager):
        turn = _turn(_controller(state_manager), "2 weeks in Italy: 10 days in Rome, 10 days in Florence")
        assert turn.response_type == "confirmation"
        assert "add up to 20" in turn.message

    def test_client_context_restores_a_fresh_session(self, state_manager):
        controller = _controller(state_manager)
        first = _turn(controller, "2 weeks in Lisbon and Granada", session_id="a")
        turn = _turn(controller, "yes", session_id="b", conversation_context=first.conversation_context)
        assert turn.response_type == "ready"
        assert [d.name for d in turn.generation_request.destinations] == ["Lisbon", "Granada"]


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

class TestQuestions:
    def test_question_is_answered(self, state_manager):
        llm = FakeLLM([{"answer": "Mild, around 15C in spring."}])
        turn = _turn(_controller(state_manager, llm), "What's the weather like in Rome?")
        assert turn.response_type == "question"
        assert turn.message == "Mild, around 15C in spring."
        assert llm.tasks() == ["answer_question"]

    def test_answer_fallback_when_llm_unavailable(self, state_manager):
        turn = _turn(_controller(state_manager, FakeLLM()), "What's the weather like in Rome?")
        assert turn.response_type == "question"
        assert turn.message.startswith("I can't look that up right now.")
        assert turn.missing_fields == ["destinations"]


# ---------------------------------------------------------------------------
# Modification through the graph
# ---------------------------------------------------------------------------

class TestModificationTurns:
    def test_add_days(self, state_manager):
        _seed_itinerary(state_manager)
        turn = _turn(_controller(state_manager), "Add 2 days in Rome")
        assert turn.response_type == "ready"
        assert turn.message == "Updated! Planning your 10-day trip: Paris (5 days) and Rome (5 days)."
        assert turn.classification == InputType.MODIFICATION

    def test_remove_destination(self, state_manager):
        _seed_itinerary(state_manager)
        turn = _turn(_controller(state_manager), "Remove Rome")
        assert [d.name for d in turn.generation_request.destinations] == ["Paris"]

    def test_make_it_days_in_place(self, state_manager):
        _seed_itinerary(state_manager)
        turn = _turn(_controller(state_manager), "Actually, make it 4 days in Paris instead")
        assert turn.response_type == "ready"
        assert turn.message == "Updated! Planning your 7-day trip: Paris (4 days) and Rome (3 days)."

    def test_make_it_whole_trip_asks_to_confirm_split(self, state_manager):
        _seed_itinerary(state_manager)
        turn = _turn(_controller(state_manager), "make it 10 days")
        assert turn.response_type == "confirmation"
        assert [(d.name, d.day_count) for d in turn.destinations] == [("Paris", 6), ("Rome", 4)]

    def test_swap_keeps_day_count(self, state_manager):
        _seed_itinerary(state_manager)
        turn = _turn(_controller(state_manager), "swap Rome for Madrid")
        assert turn.response_type == "ready"
        assert turn.message == "Updated! Planning your 8-day trip: Paris (5 days) and Madrid (3 days)."

    def test_unmatched_edit_falls_back_to_extractor(self, state_manager):
        _seed_itinerary(state_manager)
        llm = FakeLLM()
        turn = _turn(_controller(state_manager, llm), "update it to 6 days in Paris")
        assert turn.response_type == "ready"
        assert turn.message == "Updated! Planning your 9-day trip: Paris (6 days) and Rome (3 days)."
        assert llm.calls == []

    def test_unknown_edit_asks_what_to_change(self, state_manager):
        _seed_itinerary(state_manager)
        turn = _turn(_controller(state_manager), "change something")
        assert turn.response_type == "question"
        assert turn.missing_fields == ["modification"]


# ---------------------------------------------------------------------------
# apply_modification
# ---------------------------------------------------------------------------

def _context():
    return ConversationContext(destinations=[_dest("Paris", 5, 1), _dest("Rome", 3, 2)], has_itinerary=True)


class TestApplyModification:
    def test_fewer_days_is_not_a_removal(self):
        context = _context()
        changes = apply_modification(context, "drop a day from Rome")
        assert changes == ["Rome: 3 -> 2 days"]
        assert [d.name for d in context.destinations] == ["Paris", "Rome"]

    def test_extend_and_set(self):
        context = _context()
        apply_modification(context, "extend Paris by 2 days and make Rome 4 days")
        assert [(d.name, d.day_count) for d in context.destinations] == [("Paris", 7), ("Rome", 4)]
        assert context.total_days == 11

    def test_shorten_never_below_one(self):
        context = _context()
        apply_modification(context, "shorten Rome by 10 days")
        assert context.destinations[1].day_count == 1

    def test_add_place_with_days(self):
        context = _context()
        changes = apply_modification(context, "Add 3 days in Kyoto")
        assert changes == ["added Kyoto (3 days)"]
        assert [(d.name, d.order) for d in context.destinations][-1] == ("Kyoto", 3)

    def test_add_place_without_days(self):
        context = _context()
        changes = apply_modification(context, "Add Kyoto")
        assert changes == ["added Kyoto"]
        assert context.destinations[-1].day_count == 0

    def test_remove_reorders(self):
        context = _context()
        apply_modification(context, "remove Paris")
        assert [(d.name, d.order) for d in context.destinations] == [("Rome", 1)]

    def test_cannot_remove_only_destination(self):
        context = ConversationContext(destinations=[_dest("Paris", 5, 1)])
        with pytest.raises(ParseFailure):
            apply_modification(context, "remove Paris")

    def test_make_it_days_in_place(self):
        context = _context()
        changes = apply_modification(context, "Actually, make it 4 days in Paris instead")
        assert changes == ["Paris: 5 -> 4 days"]
        assert [(d.name, d.day_count) for d in context.destinations] == [("Paris", 4), ("Rome", 3)]

    def test_make_it_whole_trip_rescales(self):
        context = _context()
        changes = apply_modification(context, "make it 10 days")
        assert changes == ["trip length: 8 -> 10 days"]
        assert [(d.name, d.day_count) for d in context.destinations] == [("Paris", 6), ("Rome", 4)]
        assert not any(d.confirmed for d in context.destinations)
        assert context.total_days == 10

    def test_make_it_whole_trip_single_stop_is_confirmed(self):
        context = ConversationContext(destinations=[_dest("Paris", 5, 1)])
        apply_modification(context, "make it a 7-day trip")
        assert [(d.day_count, d.confirmed) for d in context.destinations] == [(7, True)]

    @pytest.mark.parametrize("message, new_name", [
        ("swap Rome for Madrid", "Madrid"),
        ("swap rome for madrid", "Madrid"),
        ("replace Rome with Florence", "Florence"),
        ("switch Rome to Naples please", "Naples"),
        ("Let's do Florence instead of Rome", "Florence"),
    ])
    def test_replace_place_keeps_days(self, message, new_name):
        context = _context()
        changes = apply_modification(context, message)
        assert changes == [f"replaced Rome with {new_name}"]
        assert [(d.name, d.day_count, d.order) for d in context.destinations] == [("Paris", 5, 1), (new_name, 3, 2)]

    def test_pace_change(self):
        context = _context()
        assert apply_modification(context, "make it more relaxed") == ["pace: relaxed"]
        assert context.preferences["pace"] == "relaxed"

    def test_nothing_recognized(self):
        with pytest.raises(ParseFailure):
            apply_modification(_context(), "what about it")


# ---------------------------------------------------------------------------
# Merge helpers and routing
# ---------------------------------------------------------------------------

class TestMergeDestinations:
    def test_vague_placeholder_is_replaced(self):
        merged = merge_destinations([_dest("Europe", 0, 1, False)], [_dest("Paris", 3, 1)], InputType.CONVERSATIONAL)
        assert [d.name for d in merged] == ["Paris"]

    def test_structured_request_replaces_plan(self):
        merged = merge_destinations([_dest("Paris", 5, 1)], [_dest("Tokyo", 4, 1)], InputType.STRUCTURED)
        assert [d.name for d in merged] == ["Tokyo"]

    def test_conversational_appends(self):
        merged = merge_destinations([_dest("Paris", 5, 1)], [_dest("Rome", 3, 1)], InputType.CONVERSATIONAL)
        assert [(d.name, d.order) for d in merged] == [("Paris", 1), ("Rome", 2)]

    def test_sequencing_word_appends(self):
        merged = merge_destinations([_dest("Paris", 5, 1)], [_dest("Rome", 3, 1)], InputType.STRUCTURED, append=True)
        assert [(d.name, d.order) for d in merged] == [("Paris", 1), ("Rome", 2)]

    def test_known_place_gets_new_count(self):
        merged = merge_destinations([_dest("Paris", 0, 1, False)], [_dest("Paris", 4, 1)], InputType.CONVERSATIONAL)
        assert [(d.name, d.day_count, d.confirmed) for d in merged] == [("Paris", 4, True)]


def test_apply_intent_caps_destination_count():
    names = ["Paris", "Rome", "Berlin", "Vienna", "Prague", "Budapest"]
    intent = TravelIntent(destinations=[_dest(n, 2, i) for i, n in enumerate(names, start=1)])
    context = apply_intent(ConversationContext(), intent, InputType.STRUCTURED, "six cities")
    assert [d.name for d in context.destinations] == names[:5]
    assert context.pending_conflicts
    assert context.total_days == 10


def test_then_follow_up_extends_the_plan(state_manager):
    controller = _controller(state_manager)
    _turn(controller, "5 days in Paris")
    turn = _turn(controller, "Then 3 days in Rome")
    assert turn.response_type == "ready"
    assert turn.message == "Great! Planning your 8-day trip: Paris (5 days) and Rome (3 days)."


def test_total_days_cleared_when_nothing_is_counted():
    stored = ConversationContext(destinations=[_dest("Paris", 5, 1)], total_days=5)
    intent = TravelIntent(destinations=[_dest("Tokyo", 0, 1, False)])
    working = apply_intent(stored.model_copy(deep=True), intent, InputType.STRUCTURED, "Tokyo")
    assert working.total_days == 0

    merge_context(stored, working.model_dump())
    assert [d.name for d in stored.destinations] == ["Tokyo"]
    assert stored.total_days == 0


def test_apply_intent_records_constraints():
    intent = TravelIntent(destinations=[_dest("Rome", 3, 1)], budget_hint="luxury")
    context = apply_intent(ConversationContext(), intent, InputType.STRUCTURED, "3 days in Rome, must see the Colosseum")
    assert context.preferences["budget"] == "luxury"
    assert [(c.kind, c.value) for c in context.constraints] == [("must_see", "Colosseum")]


@pytest.mark.parametrize("kind, node", [
    (InputType.MODIFICATION, "modify"),
    (InputType.QUESTION, "answer_question"),
    (InputType.STRUCTURED, "extract"),
    (InputType.AMBIGUOUS, "extract"),
])
def test_route_by_classification(kind, node):
    assert route_by_classification({"classification": ClassificationResult(kind, 0.5)}) == node


def test_turn_messages_are_persisted(state_manager):
    _turn(_controller(state_manager), "5 days in Paris")
    state = state_manager.get("s1")
    assert [m.role for m in state.messages] == ["user", "assistant"]
    assert state.messages[0].classification == InputType.STRUCTURED
    assert state.context.destinations[0].name == "Paris"
