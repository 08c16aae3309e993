from __future__ import annotations

import copy
import json
import tempfile
import unittest
from pathlib import Path

from autotrack.models import ObjectiveState
from autotrack.tracking.decoder import RangeError
from autotrack.tracking.module_loader import (
    ModuleBuilder,
    ModuleLoadError,
    discover_modules,
    find_module,
    load_module,
    load_module_payload,
)

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _payload() -> dict:
    return {
        "schema_version": "watch_module_v1",
        "id": "demo",
        "name": "Demo Game",
        "authors": ["someone"],
        "game-url": "https://example.invalid/demo",
        "watches": [
            {
                "name": "items",
                "address": "0xF51500",
                "length": 6,
                "fields": {
                    "found": {"type": "u24", "offset": 0},
                    "used": {"type": "u24", "offset": 3},
                },
                "rules": [
                    {"kind": "key_item", "objective": "sword", "bit": 0, "found": "found", "used": "used"},
                    {"kind": "key_item", "objective": "key", "bit": 1, "found": "found", "used": "used"},
                ],
            },
            {
                "name": "chests",
                "address": 0x7E1000,
                "length": 1,
                "fields": {"flags": {"type": "u8", "offset": 0}},
                "rules": [
                    {"kind": "flag", "objective": "chest-1", "field": "flags", "bit": 7},
                ],
            },
        ],
    }


class ModuleLoaderTests(unittest.TestCase):
    def test_payload_compiles_watches_and_objectives(self) -> None:
        module = load_module_payload(_payload(), source_path="demo.json")
        self.assertEqual(module.id, "demo")
        self.assertEqual(module.info.game_url, "https://example.invalid/demo")
        self.assertEqual(module.info.authors, ("someone",))
        self.assertEqual([(w.address, w.length) for w in module.watches], [(0xF51500, 6), (0x7E1000, 1)])
        self.assertEqual(module.objective_ids(), ("sword", "key", "chest-1"))
        self.assertEqual(module.describe("sword").type, "key-item")
        self.assertEqual(module.describe("chest-1").type, "location")

    def test_key_item_used_bit_wins_over_found_bit(self) -> None:
        module = load_module_payload(_payload())
        dispatch = module.watches[0].dispatch
        # found: sword + key; used: sword only
        snapshot = bytes([0b11, 0, 0, 0b01, 0, 0])
        self.assertEqual(
            dispatch(snapshot),
            [("sword", ObjectiveState.COMPLETE), ("key", ObjectiveState.UNLOCKED)],
        )
        # used without found still means complete
        self.assertEqual(
            dispatch(bytes([0, 0, 0, 0b10, 0, 0])),
            [("sword", ObjectiveState.LOCKED), ("key", ObjectiveState.COMPLETE)],
        )

    def test_flag_rule_is_a_presence_check(self) -> None:
        module = load_module_payload(_payload())
        dispatch = module.watches[1].dispatch
        self.assertEqual(dispatch(b"\x80"), [("chest-1", ObjectiveState.COMPLETE)])
        self.assertEqual(dispatch(b"\x7f"), [("chest-1", ObjectiveState.LOCKED)])

    def test_flag_rule_custom_states(self) -> None:
        payload = _payload()
        payload["watches"][1]["rules"][0].update({"set_state": "unlocked", "clear_state": "objective_locked"})
        dispatch = load_module_payload(payload).watches[1].dispatch
        self.assertEqual(dispatch(b"\x80"), [("chest-1", ObjectiveState.UNLOCKED)])

    def test_short_snapshot_raises_range_error_at_dispatch(self) -> None:
        module = load_module_payload(_payload())
        with self.assertRaises(RangeError):
            module.watches[0].dispatch(b"\x00\x00\x00")

    def test_field_outside_watch_length_is_rejected(self) -> None:
        payload = _payload()
        payload["watches"][0]["length"] = 5
        with self.assertRaisesRegex(ModuleLoadError, "exceeds watch length"):
            load_module_payload(payload)

    def test_bit_outside_field_is_rejected(self) -> None:
        payload = _payload()
        payload["watches"][1]["rules"][0]["bit"] = 8
        with self.assertRaisesRegex(ModuleLoadError, "outside u8"):
            load_module_payload(payload)

    def test_invalid_declarations_are_rejected(self) -> None:
        cases = {
            "missing address": lambda p: p["watches"][0].pop("address"),
            "zero length": lambda p: p["watches"][0].update({"length": 0}),
            "unknown kind": lambda p: p["watches"][0]["rules"][0].update({"kind": "lua"}),
            "undeclared field": lambda p: p["watches"][0]["rules"][0].update({"found": "nope"}),
            "bad field type": lambda p: p["watches"][0]["fields"]["found"].update({"type": "u64"}),
            "bad schema": lambda p: p.update({"schema_version": "watch_module_v9"}),
            "no watches": lambda p: p.update({"watches": []}),
            "missing id": lambda p: p.pop("id"),
            "duplicate objective": lambda p: p.update({"objectives": ["sword", "sword"]}),
        }
        for label, mutate in cases.items():
            with self.subTest(label):
                payload = copy.deepcopy(_payload())
                mutate(payload)
                with self.assertRaises(ModuleLoadError):
                    load_module_payload(payload)

    def test_explicit_objectives_must_cover_rules(self) -> None:
        payload = _payload()
        payload["objectives"] = [{"id": "sword", "name": "Sword"}, "key"]
        with self.assertRaisesRegex(ModuleLoadError, "undeclared objective 'chest-1'"):
            load_module_payload(payload)

        payload["objectives"].append({"id": "chest-1", "name": "First Chest", "type": "location"})
        module = load_module_payload(payload)
        self.assertEqual(module.describe("sword").name, "Sword")
        self.assertEqual(module.describe("chest-1").name, "First Chest")

    def test_builder_surface_is_sealed_after_build(self) -> None:
        builder = ModuleBuilder("scripted")
        builder.define_objective("flag")

        def _procedure(data, set_objective_state):
            state = ObjectiveState.COMPLETE if data.bit_set(data.get_u8(0), 0) else ObjectiveState.LOCKED
            set_objective_state("flag", state)

        watch = builder.add_mem_watch(0x10, 1, _procedure)
        module = builder.build()
        self.assertEqual(watch.dispatch(b"\x01"), [("flag", ObjectiveState.COMPLETE)])

        with self.assertRaisesRegex(ModuleLoadError, "only available while"):
            builder.add_mem_watch(0x20, 1, _procedure)
        self.assertEqual(len(module.watches), 1)

    def test_builder_rejects_non_callable_dispatch(self) -> None:
        builder = ModuleBuilder("scripted")
        with self.assertRaises(ModuleLoadError):
            builder.add_mem_watch(0x10, 1, "not callable")  # type: ignore[arg-type]

    def test_load_module_from_directory_and_discovery(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "demo").mkdir()
            (root / "demo" / "module.json").write_text(json.dumps(_payload()), encoding="utf-8")
            (root / "broken").mkdir()
            (root / "broken" / "module.yaml").write_text("id: broken\nwatches: []\n", encoding="utf-8")
            (root / "empty").mkdir()

            module = load_module(root / "demo")
            self.assertTrue(module.info.source_path.endswith("module.json"))

            found = {item["id"]: item for item in discover_modules(root)}
            self.assertTrue(found["demo"]["valid"])
            self.assertEqual(found["demo"]["objectives"], 3)
            self.assertFalse(found["broken"]["valid"])
            self.assertFalse(found["empty"]["valid"])
            self.assertIn("No module manifest", found["empty"]["error"])

            self.assertEqual(find_module(root, "demo"), root / "demo")
            self.assertIsNone(find_module(root, "missing"))

    def test_invalid_yaml_maps_to_module_load_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "module.yaml"
            path.write_text("id: [unclosed\n", encoding="utf-8")
            with self.assertRaises(ModuleLoadError):
                load_module(path)

    def test_shipped_ff4fe_module(self) -> None:
        module = load_module(PROJECT_ROOT / "modules" / "ff4fe")
        self.assertEqual(module.id, "ff4fe")
        self.assertEqual(len(module.objectives), 17)
        self.assertEqual(len(module.watches), 1)
        watch = module.watches[0]
        self.assertEqual((watch.address, watch.length), (0xF51500, 6))

        # found: package, hook (bit 8), crystal (bit 16); used: package
        found = (1 << 0) | (1 << 8) | (1 << 16)
        used = 1 << 0
        snapshot = found.to_bytes(3, "little") + used.to_bytes(3, "little")
        states = dict(watch.dispatch(snapshot))
        self.assertIs(states["package"], ObjectiveState.COMPLETE)
        self.assertIs(states["hook"], ObjectiveState.UNLOCKED)
        self.assertIs(states["crystal"], ObjectiveState.UNLOCKED)
        self.assertIs(states["spoon"], ObjectiveState.LOCKED)
        self.assertEqual(len(states), 17)


if __name__ == "__main__":
    unittest.main()
