"""
Unit tests for dex/route_deduplication.py

Verifies that route fingerprinting, cooldown and cooldown persistence work
correctly.
"""

import json
import os
import tempfile
import time
import unittest

from dex.route_deduplication import RouteCooldown, create_fingerprint, create_route_key

USDC = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
WETH = "0x7ceb23fd6bc0add59e62ac25578270cff1b9f619"
DAI = "0x8f3cf7ad23cd3cadbd9735aff958023239c6a063"
POOL_1 = "0x853ee4b2a13f8a742d64c8f088be7ba2131f670d"
POOL_2 = "0xadbf1854e5883eb8aa7baf50705338739e558e5b"
POOL_3 = "0x45dda9cb7c25131df268515131f647d726f50608"


class TestFingerprint(unittest.TestCase):
    """Test route fingerprint derivation."""

    def test_fingerprint_deterministic(self):
        """Same ordered route yields the same fingerprint."""
        fp1 = create_fingerprint("triangular", [USDC, WETH, DAI, USDC], [POOL_1, POOL_2, POOL_3])
        fp2 = create_fingerprint("triangular", [USDC, WETH, DAI, USDC], [POOL_1, POOL_2, POOL_3])

        self.assertEqual(fp1, fp2)
        self.assertEqual(len(fp1), 32)
        int(fp1, 16)  # hex

    def test_fingerprint_case_insensitive(self):
        fp1 = create_fingerprint("direct", [USDC, DAI, USDC], [POOL_1, POOL_2])
        fp2 = create_fingerprint("direct", [USDC.upper(), DAI, USDC], [POOL_1.upper(), POOL_2])
        self.assertEqual(fp1, fp2)

    def test_reversed_route_differs(self):
        """The same pools traded in the opposite direction are a different trade."""
        forward = create_fingerprint("triangular", [USDC, WETH, DAI, USDC], [POOL_1, POOL_2, POOL_3])
        backward = create_fingerprint("triangular", [USDC, DAI, WETH, USDC], [POOL_3, POOL_2, POOL_1])
        self.assertNotEqual(forward, backward)

    def test_kind_is_part_of_identity(self):
        direct = create_fingerprint("direct", [USDC, DAI, USDC], [POOL_1, POOL_2])
        other = create_fingerprint("triangular", [USDC, DAI, USDC], [POOL_1, POOL_2])
        self.assertNotEqual(direct, other)

    def test_route_key_keeps_order(self):
        key = create_route_key("direct", [USDC, DAI, USDC], [POOL_2, POOL_1])
        self.assertEqual(key, ["direct", USDC, DAI, USDC, POOL_2, POOL_1])


class TestRouteCooldown(unittest.TestCase):
    """Test cooldown logic."""

    def setUp(self):
        self.cooldown = RouteCooldown(cooldown_sec=3.0)

    def test_first_execution_allowed(self):
        should_exec, reason = self.cooldown.should_execute("fp-001", now=1000.0)
        self.assertTrue(should_exec)
        self.assertIsNone(reason)

    def test_cooldown_enforced(self):
        self.cooldown.should_execute("fp-001", now=1000.0)

        should_exec, reason = self.cooldown.should_execute("fp-001", now=1001.0)

        self.assertFalse(should_exec)
        self.assertIn("cooldown", reason.lower())
        self.assertIn("2.0s", reason)

    def test_cooldown_expires(self):
        self.cooldown.should_execute("fp-001", now=1000.0)

        should_exec, reason = self.cooldown.should_execute("fp-001", now=1003.0)

        self.assertTrue(should_exec)
        self.assertIsNone(reason)

    def test_other_routes_unaffected(self):
        self.cooldown.should_execute("fp-001", now=1000.0)
        should_exec, _ = self.cooldown.should_execute("fp-002", now=1000.5)
        self.assertTrue(should_exec)

    def test_cleanup_expired(self):
        self.cooldown.should_execute("fp-001", now=1000.0)
        self.cooldown.should_execute("fp-002", now=1002.0)

        removed = self.cooldown.cleanup_expired(now=1004.0)

        self.assertEqual(removed, 1)
        self.assertEqual(self.cooldown.get_stats(), {"tracked_routes": 1})

    def test_remaining(self):
        self.cooldown.should_execute("fp-001", now=1000.0)
        self.assertAlmostEqual(self.cooldown.remaining("fp-001", now=1001.5), 1.5)
        self.assertEqual(self.cooldown.remaining("unknown", now=1001.5), 0.0)


class TestCooldownPersistence(unittest.TestCase):
    """Active cooldowns survive a restart."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.state_path = os.path.join(self.temp_dir, "state", "route_cooldowns.json")

    def test_save_and_load(self):
        cooldown = RouteCooldown(cooldown_sec=60.0)
        cooldown.should_execute("fp-active")
        cooldown.last_accepted["fp-expired"] = time.time() - 120

        saved = cooldown.save(self.state_path)
        self.assertEqual(saved, 1)

        with open(self.state_path, "r") as f:
            data = json.load(f)
        self.assertEqual(list(data), ["fp-active"])

        restored = RouteCooldown(cooldown_sec=60.0)
        self.assertEqual(restored.load(self.state_path), 1)

        should_exec, reason = restored.should_execute("fp-active")
        self.assertFalse(should_exec)
        self.assertIn("cooldown", reason.lower())

    def test_load_missing_file(self):
        cooldown = RouteCooldown()
        self.assertEqual(cooldown.load(self.state_path), 0)

    def test_no_temp_files_left(self):
        cooldown = RouteCooldown(cooldown_sec=60.0)
        cooldown.should_execute("fp-active")
        cooldown.save(self.state_path)

        leftovers = [n for n in os.listdir(os.path.dirname(self.state_path)) if n.endswith(".tmp")]
        self.assertEqual(leftovers, [])


if __name__ == "__main__":
    unittest.main()
