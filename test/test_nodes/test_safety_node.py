# test/test_nodes/test_safety_node.py
import pytest

from mailla.runtime.nodes.safety import SafetyCheckNode, classify_safety


@pytest.mark.parametrize(
    "text, flag",
    [
        ("I smell gas in the kitchen", "emergency_gas_leak"),
        ("There are sparks coming from the outlet", "emergency_sparking"),
        ("my outlet is wet after the leak", "emergency_water_near_outlet"),
        ("there's a fire in the hallway", "emergency_fire"),
    ],
)
def test_emergency_keywords(text, flag):
    result = classify_safety(text)
    assert result.tier == "emergency"
    assert result.is_emergency
    assert flag in result.flags


def test_urgent_is_not_emergency():
    result = classify_safety("no heat in my room since yesterday")
    assert result.tier == "urgent"
    assert result.flags == ["urgent_no_heat"]
    assert not result.is_emergency


def test_routine_message_has_no_flags():
    result = classify_safety("My faucet drips a little")
    assert result.tier == "routine"
    assert result.flags == []


@pytest.mark.parametrize(
    "text",
    ["The fire alarm keeps chirping", "smoke detector battery is low", ""],
)
def test_alarm_equipment_is_not_an_emergency(text):
    assert classify_safety(text).tier == "routine"


def test_emergency_wins_over_urgent():
    result = classify_safety("power is out and I see sparking from the panel")
    assert result.tier == "emergency"
    assert "urgent_no_power" in result.flags
    assert "emergency_sparking" in result.flags


@pytest.mark.asyncio
async def test_node_routes_emergency_when_forced():
    node = SafetyCheckNode(force_escalation=True)
    shared = {"student_message": "I smell gas", "conversation_id": "c1"}
    action = await node.run_async(shared)
    assert action == "emergency"
    assert shared["safety"].is_emergency


@pytest.mark.asyncio
async def test_node_is_advisory_when_escalation_disabled():
    node = SafetyCheckNode(force_escalation=False)
    shared = {"student_message": "I smell gas"}
    assert await node.run_async(shared) == "ok"
    assert shared["safety"].flags == ["emergency_gas_leak"]


@pytest.mark.asyncio
async def test_node_routes_ok_for_urgent():
    shared = {"student_message": "toilet is overflowing"}
    assert await SafetyCheckNode().run_async(shared) == "ok"
    assert shared["safety"].tier == "urgent"
