from __future__ import annotations

import pytest

from orchestrator.errors import NotFoundError, ValidationError
from orchestrator.resolver import StoredBinding, normalize_desired_state, resolve_preset
from orchestrator.wled.client import to_wire_state


class StubBindingSource:
    def __init__(self, presets: dict[int, tuple[str, list[StoredBinding]]]) -> None:
        self._presets = presets

    def load_bindings(self, preset_id: int):
        return self._presets.get(preset_id)


def test_integer_slot_is_wrapped():
    assert normalize_desired_state(3) == {"selected_slot": 3}


def test_state_object_passes_through():
    state = {"on": True, "bri": 100, "seg": [{"col": [[255, 0, 0]]}]}
    assert normalize_desired_state(state) == state


def test_legacy_json_text_is_decoded():
    assert normalize_desired_state('{"on": false}') == {"on": False}
    assert normalize_desired_state("7") == {"selected_slot": 7}


@pytest.mark.parametrize("value", [True, -1, "not json", '"nested"', 1.5, None, [1, 2]])
def test_unusable_states_are_rejected(value):
    with pytest.raises(ValidationError):
        normalize_desired_state(value)


def test_wire_state_uses_wled_preset_field():
    assert to_wire_state({"selected_slot": 4}) == {"ps": 4}
    assert to_wire_state({"on": True}) == {"on": True}


def test_resolve_preset_keeps_binding_order():
    source = StubBindingSource(
        {
            1: (
                "Evening",
                [
                    StoredBinding(2, "Porch", "10.0.0.2", '{"selected_slot": 3}'),
                    StoredBinding(1, "Hall", "10.0.0.1", '{"on": true, "bri": 100}'),
                ],
            )
        }
    )

    resolved = resolve_preset(1, source)

    assert resolved.name == "Evening"
    assert [binding.instance_id for binding in resolved.bindings] == [2, 1]
    assert resolved.bindings[0].desired_state == {"selected_slot": 3}
    assert resolved.bindings[1].desired_state == {"on": True, "bri": 100}


def test_resolve_preset_with_no_bindings_is_empty():
    resolved = resolve_preset(5, StubBindingSource({5: ("Empty", [])}))
    assert resolved.bindings == []


def test_resolve_unknown_preset_raises_not_found():
    with pytest.raises(NotFoundError):
        resolve_preset(99, StubBindingSource({}))
