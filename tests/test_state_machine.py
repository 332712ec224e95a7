from __future__ import annotations

import unittest

from flightschool.state_machine import (
    CHALLENGE_STATE_MACHINE,
    GOAL_STATE_MACHINE,
    TOPIC_STATE_MACHINE,
    InvalidTransitionError,
    StatefulItem,
    StateTransition,
    get_current_state,
)

MACHINES = (CHALLENGE_STATE_MACHINE, GOAL_STATE_MACHINE, TOPIC_STATE_MACHINE)


def _item_in(machine, state):
    history = (StateTransition(state=state, source="system"),)
    return StatefulItem(data={"id": "x"}, state_history=history)


class StateMachineTest(unittest.TestCase):
    def test_create_seeds_single_system_entry(self) -> None:
        item = TOPIC_STATE_MACHINE.create({"id": "t1"})
        self.assertEqual(len(item.state_history), 1)
        self.assertEqual(item.current_state, "not-explored")
        self.assertEqual(item.state_history[0].source, "system")

    def test_every_pair_follows_the_table(self) -> None:
        for machine in MACHINES:
            for current in machine.states:
                for requested in machine.states:
                    item = _item_in(machine, current)
                    with self.subTest(machine=machine.item_type, current=current, requested=requested):
                        if requested in machine.transitions[current]:
                            moved = machine.transition(item, requested, source="test")
                            self.assertEqual(len(moved.state_history), 2)
                            self.assertEqual(moved.current_state, requested)
                            self.assertEqual(moved.state_history[-1].source, "test")
                        else:
                            with self.assertRaises(InvalidTransitionError):
                                machine.transition(item, requested)
                            self.assertEqual(len(item.state_history), 1)

    def test_transition_does_not_mutate_original(self) -> None:
        item = GOAL_STATE_MACHINE.create({"id": "g1"})
        moved = GOAL_STATE_MACHINE.transition(item, "completed", note="done early")
        self.assertEqual(item.current_state, "not-started")
        self.assertEqual(moved.state_history[:1], item.state_history)
        self.assertEqual(moved.state_history[-1].note, "done early")

    def test_terminal_and_self_transitions_raise(self) -> None:
        skipped = TOPIC_STATE_MACHINE.transition(TOPIC_STATE_MACHINE.create({"id": "t"}), "skipped")
        self.assertTrue(TOPIC_STATE_MACHINE.is_terminal("skipped"))
        with self.assertRaises(InvalidTransitionError) as ctx:
            TOPIC_STATE_MACHINE.transition(skipped, "explored")
        self.assertEqual(ctx.exception.allowed, ())

        started = CHALLENGE_STATE_MACHINE.create({"id": "c"})
        with self.assertRaises(InvalidTransitionError):
            CHALLENGE_STATE_MACHINE.transition(started, "not-started")

    def test_challenge_cannot_complete_without_starting(self) -> None:
        self.assertFalse(CHALLENGE_STATE_MACHINE.can_transition("not-started", "completed"))
        self.assertTrue(GOAL_STATE_MACHINE.can_transition("not-started", "completed"))

    def test_serialization_uses_state_history_key(self) -> None:
        item = CHALLENGE_STATE_MACHINE.transition(CHALLENGE_STATE_MACHINE.create({"id": "c"}), "in-progress", "ui")
        payload = item.to_dict()
        self.assertEqual([entry["state"] for entry in payload["stateHistory"]], ["not-started", "in-progress"])
        self.assertEqual(StatefulItem.from_dict(payload), item)

    def test_empty_history_has_no_current_state(self) -> None:
        with self.assertRaises(ValueError):
            get_current_state(())


if __name__ == "__main__":
    unittest.main()
