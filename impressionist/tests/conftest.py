"""
Shared fixtures for the engine test suite.
"""

from typing import Any, Dict, List, Optional, Type

import pytest
from pydantic import BaseModel

from impressionist.config import Settings
from impressionist.providers.language_model import LanguageModel, StructuredResult
from impressionist.schemas.outcome import TokenUsage


class ScriptedLanguageModel(LanguageModel):
    """
    LanguageModel that answers from per-schema queues instead of a provider.

    Queue entries are dicts (returned as ``data``) or exceptions (raised).
    A call for a schema whose queue is empty fails the test.
    """

    def __init__(self, configured: bool = True, **responses: List[Any]):
        super().__init__()
        self.configured = configured
        self.responses: Dict[str, List[Any]] = {k: list(v) for k, v in responses.items()}
        self.calls: List[Dict[str, Any]] = []

    def is_configured(self) -> bool:
        return self.configured

    def queue(self, schema_name: str, *items: Any) -> None:
        self.responses.setdefault(schema_name, []).extend(items)

    def calls_for(self, schema_name: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["schema"] == schema_name]

    async def invoke(
        self,
        prompt: str,
        schema: Type[BaseModel],
        temperature: Optional[float] = None,
        use_cost_model: bool = False,
    ) -> StructuredResult:
        self.calls.append(
            {
                "prompt": prompt,
                "schema": schema.__name__,
                "temperature": temperature,
                "use_cost_model": use_cost_model,
            }
        )
        queue = self.responses.get(schema.__name__)
        if not queue:
            raise AssertionError(f"Unexpected {schema.__name__} call")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return StructuredResult(
            data=item,
            usage=TokenUsage(input_tokens=10, output_tokens=5),
            model="scripted",
        )


def make_narration(*parts: str, **fields: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "reasoning": fields.pop("reasoning", "test"),
        "narrative_parts": list(parts) or ["Nothing much happens."],
    }
    data.update(fields)
    return data


@pytest.fixture
def scripted_model():
    """Factory for ScriptedLanguageModel instances"""
    return ScriptedLanguageModel


@pytest.fixture
def narration():
    """Build a DirectorOutput-shaped dict"""
    return make_narration


@pytest.fixture
def quiet_settings():
    """Settings that keep background compaction out of engine tests"""
    return Settings(
        openai_api_key="",
        engine_mode="flags",
        memory_compaction_interval=20,
        max_memory_count=1000,
    )


@pytest.fixture
def door_story() -> Dict[str, Any]:
    """Two rooms, a gated ending and a discoverable item"""
    return {
        "title": "The Locked Room",
        "context": "You wake in a locked room with no memory of arriving.",
        "guidance": "Keep descriptions short and tactile.",
        "scenes": {
            "room": {
                "sketch": "A bare room with a heavy wooden door.",
                "location": "cell",
                "leads_to": {"hallway": "the player opens the door"},
                "transitions": {"hallway": {"all_of": ["door_open"]}},
            },
            "hallway": {
                "sketch": "A long hallway lit by flickering bulbs.",
                "location": "corridor",
                "initial_flags": {"heard_footsteps": True},
            },
        },
        "endings": {
            "requires": {"all_of": ["has_key"]},
            "variations": [
                {
                    "id": "freedom",
                    "sketch": "The player walks out into daylight.",
                    "requires": {"all_of": ["door_open"]},
                    "when": "the player leaves through the front gate",
                }
            ],
        },
        "flags": {
            "door_open": {"default": False, "description": "the player opens the door"},
            "has_key": {"default": False, "description": "the player finds the key"},
            "trusts_guard": {
                "default": False,
                "description": "the guard decides to help",
                "requires": {"all_of": ["has_key"]},
            },
        },
        "world": {
            "characters": {
                "guard": {
                    "name": "The Guard",
                    "sketch": "A tired man in a grey coat",
                    "behaviors": {
                        "base": "Answers questions curtly",
                        "states": [
                            {
                                "when": {"all_of": ["trusts_guard"]},
                                "description": "Speaks warmly and offers help",
                            }
                        ],
                    },
                }
            },
            "locations": {"cell": {"name": "The Cell", "sketch": "Cold stone walls"}},
            "items": {
                "key": {
                    "name": "Brass Key",
                    "sketch": "A small brass key",
                    "found_in": "cell",
                    "reveals": "the key fits the front gate",
                }
            },
        },
    }
