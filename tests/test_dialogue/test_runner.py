import logging

import pytest

from storyloom.core.config import RunnerConfig
from storyloom.core.errors import DialogueStructureError, DialogueValidationError
from storyloom.core.events import DialogueEvent
from storyloom.dialogue.definitions import DialogueDefinition, Speaker
from storyloom.dialogue.flags import FlagStore
from storyloom.dialogue.runner import (
    ChoiceUnavailableReason,
    DialogueRunner,
    RunnerState,
)


def _listen_all(runner, recorder):
    for event_type in DialogueEvent:
        runner.on(event_type, recorder)


# --- Lifecycle ---

def test_minimal_dialogue(run):
    dialogue = {
        "id": "greeting",
        "startNode": "hello",
        "nodes": {
            "hello": {"text": "Hi {{n}}", "choices": [{"text": "Bye", "next": "bye"}]},
            "bye": {"text": "Bye", "isEnd": True},
        },
    }
    runner = DialogueRunner(game_flags=FlagStore({"n": "Bob"}))
    assert runner.state is RunnerState.IDLE

    view = run(runner.start(dialogue))
    assert view.current_node.text == "Hi Bob"
    assert [c.text for c in view.available_choices] == ["Bye"]
    assert not view.is_ended

    view = run(runner.choose(0))
    assert view.current_node.text == "Bye"
    assert view.is_ended
    assert view.available_choices == []
    assert runner.is_ended()
    assert runner.state is RunnerState.ENDED


def test_start_enters_start_node(runner, tavern_dialogue, run):
    view = run(runner.start(tavern_dialogue))

    assert runner.current_node_id == "greet"
    assert view.current_node.text == "Welcome, Ada. I am Mara."
    assert runner.get_current_node().text == "Welcome, Ada. I am Mara."
    assert runner.get_conversation_flags() == {"visits": 1}
    assert [(c.choice_id, c.text) for c in view.available_choices] == [
        (0, "Any news?"),
        (3, "Goodbye"),
    ]


def test_start_accepts_definition_instance(runner, tavern_dialogue, run):
    definition = DialogueDefinition.model_validate(tavern_dialogue)
    run(runner.start(definition))
    assert runner.dialogue is definition


def test_start_rejects_bad_definitions(runner, run):
    with pytest.raises(DialogueValidationError):
        run(runner.start({"id": "d", "startNode": "missing",
                          "nodes": {"a": {"text": "A", "isEnd": True}}}))
    with pytest.raises(DialogueValidationError):
        run(runner.start({"id": "d", "startNode": "__proto__",
                          "nodes": {"__proto__": {"text": "A", "isEnd": True}}}))
    with pytest.raises(DialogueValidationError):
        run(runner.start({"id": "d"}))
    assert runner.state is RunnerState.IDLE


def test_operations_require_a_dialogue(runner, run):
    with pytest.raises(DialogueValidationError):
        run(runner.choose(0))
    with pytest.raises(DialogueValidationError):
        run(runner.restart())
    with pytest.raises(DialogueValidationError):
        run(runner.jump_to("greet"))
    with pytest.raises(DialogueValidationError):
        runner.serialize()
    with pytest.raises(DialogueValidationError):
        runner.clear_conversation_flags()

    assert run(runner.get_choices()) == []
    assert runner.get_current_node() is None
    assert run(runner.back()) is None


def test_restart_resets_conversation(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(0)
        view = await runner.restart()
        return view

    view = run(scenario())
    assert runner.current_node_id == "greet"
    assert runner.get_history() == []
    assert runner.get_conversation_flags() == {"visits": 1}
    assert not view.is_ended


def test_restart_can_preserve_conversation(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(0)
        await runner.restart(preserve_conversation_flags=True)

    run(scenario())
    assert runner.get_conversation_flags() == {"visits": 2, "asked": True}


def test_restart_after_end(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(1)
        assert runner.is_ended()
        return await runner.restart()

    view = run(scenario())
    assert not view.is_ended
    assert runner.state is RunnerState.ACTIVE


# --- Choices ---

def test_choice_availability_annotations(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    views = run(runner.get_choices(include_disabled=True, include_unavailable=True))

    assert [(v.choice_id, v.available, v.reason) for v in views] == [
        (0, True, None),
        (1, False, ChoiceUnavailableReason.CONDITIONS_NOT_MET),
        (2, False, ChoiceUnavailableReason.DISABLED),
        (3, True, None),
    ]
    assert views[2].disabled_text == "You don't know it"
    assert views[3].tags == ["exit"]


def test_get_choices_inclusion_flags(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))

    disabled = run(runner.get_choices(include_disabled=True))
    assert [v.choice_id for v in disabled] == [0, 2, 3]

    everything = run(runner.get_choices(include_unavailable=True))
    assert [(v.choice_id, v.reason) for v in everything] == [
        (0, None),
        (1, ChoiceUnavailableReason.CONDITIONS_NOT_MET),
        (2, ChoiceUnavailableReason.DISABLED),
        (3, None),
    ]


def test_get_choices_filter(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    exits = run(runner.get_choices(filter=lambda choice: "exit" in (choice.tags or [])))
    assert [v.text for v in exits] == ["Goodbye"]


def test_conditions_reflect_game_flags(runner, tavern_dialogue, run):
    runner.game_flags.set("gold", 25)

    async def scenario():
        view = await runner.start(tavern_dialogue)
        assert [c.choice_id for c in view.available_choices] == [0, 1, 3]
        return await runner.choose(1)

    view = run(scenario())
    assert view.current_node.text == "The map is yours."
    assert view.is_ended
    assert runner.game_flags.get("gold") == 15


def test_choose_indexes_offered_choices(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        return await runner.choose(1)

    view = run(scenario())
    assert runner.current_node_id == "leave"
    assert view.is_ended


def test_choose_rejects_bad_indices(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))

    for index in (-1, 2, 10):
        with pytest.raises(DialogueValidationError):
            run(runner.choose(index))
    with pytest.raises(DialogueValidationError):
        run(runner.choose(True))
    with pytest.raises(DialogueValidationError):
        run(runner.choose("0"))
    assert runner.current_node_id == "greet"


def test_choose_after_end_fails(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    run(runner.choose(1))

    with pytest.raises(DialogueValidationError, match="ended"):
        run(runner.choose(0))


def test_choose_by_id(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))

    with pytest.raises(DialogueValidationError, match="disabled"):
        run(runner.choose_by_id(2))
    with pytest.raises(DialogueValidationError, match="conditions"):
        run(runner.choose_by_id(1))
    with pytest.raises(DialogueValidationError):
        run(runner.choose_by_id(4))

    view = run(runner.choose_by_id(3))
    assert view.current_node.text == "Safe travels."


def test_choice_to_missing_node(runner, run):
    run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {"a": {"text": "A", "choices": [{"text": "Go", "next": "ghost"}]}},
    }))
    with pytest.raises(DialogueStructureError) as exc:
        run(runner.choose(0))
    assert exc.value.dialogue_id == "d"
    assert exc.value.node_id == "a"


def test_choice_callbacks_see_source_node(run):
    calls = []

    def note(ctx):
        calls.append((ctx.node_id, ctx.args))

    runner = DialogueRunner(action_handlers={"note": note})
    run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {
            "a": {"text": "A", "choices": [{
                "text": "Go", "next": "b",
                "actions": [{"type": "callback", "name": "note", "args": ["chose"]}],
            }]},
            "b": {"text": "B", "isEnd": True,
                  "actions": [{"type": "callback", "name": "note", "args": ["entered"]}]},
        },
    }))
    run(runner.choose(0))

    assert calls == [("a", ["chose"]), ("b", ["entered"])]


@pytest.mark.parametrize("check", [
    ["x", "==", None],
    ["x", 5, 1],
    ["x", "==", [1]],
])
def test_malformed_check_makes_choice_unavailable(run, check):
    runner = DialogueRunner()
    view = run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {
            "a": {"text": "A", "choices": [
                {"text": "broken", "next": "b", "conditions": {"check": check}},
                {"text": "ok", "next": "b"},
            ]},
            "b": {"text": "B", "isEnd": True},
        },
    }))

    assert [c.text for c in view.available_choices] == ["ok"]
    everything = run(runner.get_choices(include_unavailable=True))
    assert everything[0].reason is ChoiceUnavailableReason.CONDITIONS_NOT_MET


def test_missing_handler_surfaces_on_start(run):
    runner = DialogueRunner()
    with pytest.raises(DialogueValidationError, match="not registered"):
        run(runner.start({
            "id": "d", "startNode": "a",
            "nodes": {"a": {"text": "A", "isEnd": True,
                            "actions": [{"type": "callback", "name": "ghost"}]}},
        }))


# --- Auto-advance ---

def test_auto_advance_chain(runner, tavern_dialogue, recorder, run):
    run(runner.start(tavern_dialogue))
    _listen_all(runner, recorder)

    view = run(runner.choose(0))

    assert runner.current_node_id == "rumor_more"
    assert view.current_node.text == "Visits: 1"
    entered = [e["node"].text for e in recorder.of("node_entered")]
    assert entered == ["They say the mine is haunted.", "Visits: 1"]
    assert [e.node_id for e in runner.get_history()] == ["greet"]


def test_auto_advance_hop_ceiling(run):
    runner = DialogueRunner(config=RunnerConfig(max_auto_advance_hops=10))
    loop = {
        "id": "loop", "startNode": "a",
        "nodes": {"a": {"text": "A", "next": "b"}, "b": {"text": "B", "next": "a"}},
    }
    with pytest.raises(DialogueStructureError, match="exceeded 10 hops"):
        run(runner.start(loop))


def test_auto_advance_to_missing_node(runner, run):
    with pytest.raises(DialogueStructureError):
        run(runner.start({
            "id": "d", "startNode": "a",
            "nodes": {"a": {"text": "A", "next": "ghost"}},
        }))


def test_dead_end_ends_dialogue(runner, recorder, run, caplog):
    runner.on(DialogueEvent.DIALOGUE_ENDED, recorder)
    view = run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {"a": {"text": "Nothing more to say."}},
    }))

    assert view.is_ended
    assert len(recorder.events) == 1
    assert "no choices or next" in caplog.text


def test_end_node_with_next_does_not_advance(runner, run):
    view = run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {"a": {"text": "A", "isEnd": True, "next": "b"}, "b": {"text": "B"}},
    }))
    assert view.current_node.text == "A"
    assert runner.is_ended()


# --- Navigation ---

def test_back_is_an_exact_undo(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(0)
        assert runner.get_conversation_flags() == {"visits": 1, "asked": True}
        await runner.back()

    run(scenario())
    assert runner.current_node_id == "greet"
    assert runner.get_conversation_flags() == {"visits": 1}
    assert runner.get_current_node().text == "Welcome, Ada. I am Mara."
    assert runner.get_history() == []


def test_back_leaves_ended_state(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(1)
        await runner.back()

    run(scenario())
    assert runner.state is RunnerState.ACTIVE
    assert [c.text for c in run(runner.get_choices())] == ["Any news?", "Goodbye"]


def test_back_on_empty_history_is_noop(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    run(runner.back())
    assert runner.current_node_id == "greet"


def test_history_grows_per_transition(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(0)
        await runner.choose(0)

    run(scenario())
    history = runner.get_history()
    assert [(e.node_id, e.choice_index) for e in history] == [("greet", 0), ("rumor_more", 0)]
    assert history[1].choice.text == "Something else"
    assert history[1].conversation_flags == {"visits": 1, "asked": True}

    history.clear()
    assert len(runner.get_history()) == 2


def test_jump_to(runner, tavern_dialogue, recorder, run):
    run(runner.start(tavern_dialogue))
    _listen_all(runner, recorder)

    run(runner.jump_to("rumor"))

    assert runner.current_node_id == "rumor"
    assert runner.get_conversation_flags() == {"visits": 1}
    assert recorder.types == ["node_exited", "node_entered"]
    entry = runner.get_history()[-1]
    assert entry.node_id == "greet"
    assert entry.choice_index is None
    assert entry.choice is None

    run(runner.back())
    assert runner.current_node_id == "greet"


def test_jump_to_end_node(runner, tavern_dialogue, recorder, run):
    run(runner.start(tavern_dialogue))
    runner.on(DialogueEvent.DIALOGUE_ENDED, recorder)

    run(runner.jump_to("leave"))
    assert runner.is_ended()
    assert recorder.events == []


def test_jump_to_unknown_node(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    for node_id in ("ghost", "__proto__"):
        with pytest.raises(DialogueValidationError):
            run(runner.jump_to(node_id))
    assert runner.current_node_id == "greet"


# --- Flags ---

def test_conversation_flags_are_isolated(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    run(runner.choose(0))

    assert runner.game_flags.read_all() == {"player": "Ada"}

    flags = runner.get_conversation_flags()
    flags["visits"] = 99
    assert runner.get_conversation_flags()["visits"] == 1

    run(runner.start(tavern_dialogue))
    assert runner.get_conversation_flags() == {"visits": 1}


def test_game_flags_persist_across_dialogues(runner, tavern_dialogue, run):
    runner.game_flags.set("gold", 10)
    run(runner.start(tavern_dialogue))
    run(runner.choose(1))
    run(runner.start(tavern_dialogue))

    assert runner.game_flags.get("gold") == 0


def test_clear_conversation_flags(runner, tavern_dialogue, run):
    run(runner.start(tavern_dialogue))
    runner.clear_conversation_flags()
    assert runner.get_conversation_flags() == {}


def test_accepts_duck_typed_flag_store(tavern_dialogue, run):
    class Wrapper:
        def __init__(self):
            self._inner = FlagStore({"player": "Zed"})

        def __getattr__(self, name):
            return getattr(self._inner, name)

    runner = DialogueRunner(game_flags=Wrapper())
    view = run(runner.start(tavern_dialogue))
    assert view.current_node.text.startswith("Welcome, Zed.")


def test_rejects_invalid_capabilities():
    with pytest.raises(DialogueValidationError):
        DialogueRunner(game_flags=object())
    with pytest.raises(DialogueValidationError):
        DialogueRunner(action_handlers={"x": 1})
    with pytest.raises(DialogueValidationError):
        DialogueRunner(interpolation={"x": 1})
    with pytest.raises(DialogueValidationError):
        DialogueRunner(i18n=object())
    with pytest.raises(DialogueValidationError):
        DialogueRunner(speakers={"guard": {"portrait": "no-name.png"}})


# --- Text ---

def test_unknown_speaker_renders_empty(run):
    runner = DialogueRunner()
    view = run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {"a": {"text": "[{{speaker}}]", "speaker": "nobody", "isEnd": True}},
    }))
    assert view.current_node.text == "[]"


def test_interpolation_functions(run):
    runner = DialogueRunner(interpolation={"shout": lambda ctx: ctx.current_node.speaker.upper()})
    view = run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {"a": {"text": "{{shout}}!", "speaker": "guard", "isEnd": True}},
    }))
    assert view.current_node.text == "GUARD!"


def test_node_text_is_interpolated_before_actions(run):
    runner = DialogueRunner()
    view = run(runner.start({
        "id": "d", "startNode": "a",
        "nodes": {"a": {
            "text": "Seen {{conv:seen}} times",
            "isEnd": True,
            "actions": [{"type": "increment", "flag": "conv:seen"}],
        }},
    }))
    assert view.current_node.text == "Seen  times"


def test_i18n_translates_known_keys(run):
    class Catalog:
        def t(self, key, params=None):
            return {"hello": "Bonjour {{player}}"}[key]

        def has_key(self, key):
            return key == "hello"

    dialogue = {
        "id": "d", "startNode": "a",
        "nodes": {
            "a": {"text": "hello", "choices": [{"text": "go", "next": "b"}]},
            "b": {"text": "Literal {{player}}", "isEnd": True},
        },
    }
    runner = DialogueRunner(game_flags=FlagStore({"player": "Ada"}), i18n=Catalog())

    assert run(runner.start(dialogue)).current_node.text == "Bonjour Ada"
    assert run(runner.choose(0)).current_node.text == "Literal Ada"

    untranslated = DialogueRunner(i18n=Catalog(), config=RunnerConfig(translate_text=False))
    assert run(untranslated.start(dialogue)).current_node.text == "hello"


def test_definitions_are_not_mutated_by_rendering(runner, tavern_dialogue, run):
    definition = DialogueDefinition.model_validate(tavern_dialogue)
    run(runner.start(definition))
    assert definition.nodes["greet"].text == "Welcome, {{player}}. I am {{speaker}}."


# --- Events ---

def test_start_event_sequence(runner, tavern_dialogue, recorder, run):
    _listen_all(runner, recorder)
    run(runner.start(tavern_dialogue))

    assert recorder.types == [
        "dialogue_started",
        "action_executed",
        "node_entered",
        "condition_evaluated",
    ]
    entered = recorder.of("node_entered")[0]
    assert entered["speaker"] == Speaker(name="Mara", color="#aa8844")
    evaluated = recorder.of("condition_evaluated")[0]
    assert evaluated["result"] is False


def test_choose_event_sequence(runner, tavern_dialogue, recorder, run):
    run(runner.start(tavern_dialogue))
    _listen_all(runner, recorder)

    run(runner.choose(1))

    assert recorder.types == [
        "choice_selected",
        "node_exited",
        "node_entered",
        "dialogue_ended",
    ]
    selected = recorder.of("choice_selected")[0]
    assert selected["index"] == 3
    assert selected["choice"].text == "Goodbye"
    assert recorder.of("node_exited")[0]["node"].text == "Welcome, Ada. I am Mara."
    assert recorder.of("dialogue_ended")[0]["dialogue_id"] == "tavern"


def test_constructor_callbacks_run_before_on(tavern_dialogue, run):
    order = []
    runner = DialogueRunner(on_dialogue_start=lambda e: order.append("constructor"))
    runner.on("dialogue_started", lambda e: order.append("on"))

    run(runner.start(tavern_dialogue))
    assert order == ["constructor", "on"]


def test_off_unsubscribes(runner, tavern_dialogue, recorder, run):
    runner.on(DialogueEvent.NODE_ENTERED, recorder)
    runner.off(DialogueEvent.NODE_ENTERED, recorder)
    run(runner.start(tavern_dialogue))
    assert recorder.events == []


def test_listener_errors_are_isolated_by_default(runner, tavern_dialogue, run, caplog):
    def broken(event):
        raise RuntimeError("listener bug")

    runner.on(DialogueEvent.NODE_ENTERED, broken)
    view = run(runner.start(tavern_dialogue))

    assert runner.current_node_id == "greet"
    assert not view.is_ended
    assert "node_entered" in caplog.text


def test_listener_errors_can_abort(tavern_dialogue, run):
    def broken(event):
        raise RuntimeError("listener bug")

    runner = DialogueRunner(
        config=RunnerConfig(propagate_listener_errors=True),
        on_node_enter=broken,
    )
    with pytest.raises(RuntimeError, match="listener bug"):
        run(runner.start(tavern_dialogue))

    runner.off(DialogueEvent.NODE_ENTERED, broken)
    run(runner.restart())
    assert runner.current_node_id == "greet"


def test_reentrant_calls_rejected(runner, tavern_dialogue, run):
    errors = []

    async def meddle(event):
        try:
            await runner.choose(0)
        except DialogueValidationError as e:
            errors.append(e)

    runner.on(DialogueEvent.NODE_ENTERED, meddle)
    run(runner.start(tavern_dialogue))

    assert len(errors) == 1
    assert "in progress" in str(errors[0])
    assert runner.current_node_id == "greet"


# --- Serialization ---

def test_serialize_round_trip(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.choose(0)
        return runner.serialize()

    saved = run(scenario())
    assert saved["dialogueId"] == "tavern"
    assert saved["currentNodeId"] == "rumor_more"
    assert saved["conversationFlags"] == {"visits": 1, "asked": True}

    restored = DialogueRunner(game_flags=FlagStore({"player": "Ada"}))

    async def restore():
        await restored.start(tavern_dialogue)
        await restored.deserialize(saved)

    run(restore())
    assert restored.current_node_id == "rumor_more"
    assert restored.get_conversation_flags() == {"visits": 1, "asked": True}
    assert restored.get_current_node().text == "Visits: 1"
    assert len(restored.get_history()) == 1
    assert restored.serialize() == saved

    run(restored.back())
    assert restored.current_node_id == "greet"
    assert restored.get_conversation_flags() == {"visits": 1}


def test_deserialize_does_not_run_actions(runner, tavern_dialogue, run):
    async def scenario():
        await runner.start(tavern_dialogue)
        await runner.deserialize({
            "dialogueId": "tavern",
            "currentNodeId": "greet",
            "conversationFlags": {"visits": 5},
        })

    run(scenario())
    assert runner.get_conversation_flags() == {"visits": 5}


def test_deserialize_requires_started_dialogue(runner, run):
    with pytest.raises(DialogueValidationError):
        run(runner.deserialize({"dialogueId": "tavern", "currentNodeId": "greet"}))


@pytest.mark.parametrize("state", [
    {"dialogueId": "tavern", "currentNodeId": "ghost"},
    {"dialogueId": "tavern", "currentNodeId": "__proto__"},
    {"dialogueId": "tavern", "currentNodeId": "greet",
     "history": [{"nodeId": "constructor", "node": {"text": "x"}}]},
    {"dialogueId": "tavern"},
])
def test_deserialize_rejects_bad_state(runner, tavern_dialogue, run, state):
    run(runner.start(tavern_dialogue))
    with pytest.raises(DialogueValidationError):
        run(runner.deserialize(state))
    assert runner.current_node_id == "greet"
    assert runner.get_conversation_flags() == {"visits": 1}


def test_logging_on_start(runner, tavern_dialogue, run, caplog):
    with caplog.at_level(logging.INFO, logger="storyloom.dialogue.runner"):
        run(runner.start(tavern_dialogue))
    assert "Starting dialogue 'tavern' at 'greet'" in caplog.text
