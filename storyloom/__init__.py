"""
storyloom

A branching-narrative execution engine for scripted conversations.

Quick Start:
    import asyncio
    from storyloom import DialogueRunner, FlagStore

    dialogue = {
        "id": "greeting",
        "startNode": "hello",
        "nodes": {
            "hello": {"text": "Hi {{name}}", "choices": [{"text": "Bye", "next": "bye"}]},
            "bye": {"text": "Bye", "isEnd": True},
        },
    }

    async def main():
        runner = DialogueRunner(game_flags=FlagStore({"name": "Bob"}))
        view = await runner.start(dialogue)
        print(view.current_node.text)   # Hi Bob
        await runner.choose(0)
        print(runner.is_ended())        # True

    asyncio.run(main())
"""

__version__ = "0.1.0"

# Re-export the public API for convenience
from storyloom.core import (
    DialogueError,
    DialogueValidationError,
    DialogueStructureError,
    RunnerConfig,
    EventBus,
    Event,
    DialogueEvent,
)
from storyloom.dialogue import (
    DialogueRunner,
    DialogueView,
    ChoiceView,
    ChoiceUnavailableReason,
    RunnerState,
    DialogueDefinition,
    NodeDefinition,
    ChoiceDefinition,
    Speaker,
    FlagStore,
    HistoryEntry,
    SerializedState,
    ValidationResult,
    validate_dialogue,
    load_dialogue,
    DialogueLibrary,
    create_i18n_adapter,
)

__all__ = [
    # Errors
    "DialogueError",
    "DialogueValidationError",
    "DialogueStructureError",
    # Config & events
    "RunnerConfig",
    "EventBus",
    "Event",
    "DialogueEvent",
    # Runner
    "DialogueRunner",
    "DialogueView",
    "ChoiceView",
    "ChoiceUnavailableReason",
    "RunnerState",
    # Definitions
    "DialogueDefinition",
    "NodeDefinition",
    "ChoiceDefinition",
    "Speaker",
    "FlagStore",
    "HistoryEntry",
    "SerializedState",
    # Tools
    "ValidationResult",
    "validate_dialogue",
    "load_dialogue",
    "DialogueLibrary",
    "create_i18n_adapter",
]
