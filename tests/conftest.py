import asyncio
import os
import sys

import pytest

# Ensure storyloom can be imported without installing
sys.path.append(os.getcwd())


@pytest.fixture
def run():
    """Drive a coroutine to completion (runner operations are async)."""
    return asyncio.run


@pytest.fixture
def event_bus():
    """Fresh EventBus for each test."""
    from storyloom.core.events import EventBus
    return EventBus()


@pytest.fixture
def game_flags():
    """Fresh game flag store."""
    from storyloom.dialogue.flags import FlagStore
    return FlagStore()


@pytest.fixture
def scoped_flags(game_flags):
    """Game + conversation store pair."""
    from storyloom.dialogue.flags import FlagStore, ScopedFlags
    return ScopedFlags(game=game_flags, conversation=FlagStore())


@pytest.fixture
def tavern_dialogue():
    """
    Small dialogue exercising choices, conditions, actions and auto-advance.

    greet -> (ask | bribe[gold>=10] | secret[disabled] | leave)
    ask -> rumor -> (auto) rumor_more -> (back to greet | leave)
    """
    return {
        "id": "tavern",
        "startNode": "greet",
        "nodes": {
            "greet": {
                "speaker": "barkeep",
                "text": "Welcome, {{player}}. I am {{speaker}}.",
                "actions": [{"type": "increment", "flag": "conv:visits"}],
                "choices": [
                    {"text": "Any news?", "next": "rumor",
                     "actions": [{"type": "set", "flag": "conv:asked", "value": True}]},
                    {"text": "Here's 10 gold", "next": "bribed",
                     "conditions": {"check": ["gold", ">=", 10]},
                     "actions": [{"type": "decrement", "flag": "gold", "value": 10}]},
                    {"text": "The secret word", "next": "bribed", "disabled": True,
                     "disabledText": "You don't know it"},
                    {"text": "Goodbye", "next": "leave", "tags": ["exit"]},
                ],
            },
            "rumor": {
                "speaker": "barkeep",
                "text": "They say the mine is haunted.",
                "next": "rumor_more",
            },
            "rumor_more": {
                "text": "Visits: {{conv:visits}}",
                "choices": [
                    {"text": "Something else", "next": "greet"},
                    {"text": "Goodbye", "next": "leave", "tags": ["exit"]},
                ],
            },
            "bribed": {"text": "The map is yours.", "isEnd": True},
            "leave": {"text": "Safe travels.", "isEnd": True},
        },
    }


@pytest.fixture
def runner(game_flags):
    """Runner with a barkeep speaker and a player name."""
    from storyloom.dialogue.runner import DialogueRunner
    game_flags.set("player", "Ada")
    return DialogueRunner(
        game_flags=game_flags,
        speakers={"barkeep": {"name": "Mara", "color": "#aa8844"}},
    )


@pytest.fixture
def recorder():
    """Collects (event type value, event) pairs from any number of events."""
    class Recorder:
        def __init__(self):
            self.events = []

        def __call__(self, event):
            self.events.append(event)

        @property
        def types(self):
            return [e.type.value for e in self.events]

        def of(self, name):
            return [e for e in self.events if e.type.value == name]

    return Recorder()
