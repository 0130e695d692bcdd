import unittest

from src.flagvane import AccessControl, AccessResult, _rollout_bucket

ALLOWED = AccessResult.ALLOWED
DENIED = AccessResult.DENIED


class TestAccessControl(unittest.TestCase):
    def test_rollout_extremes(self):
        self.assertEqual(AccessControl(rollout_percentage=0).evaluate_access("u1", "f1"), (DENIED, "Access restricted to all users"))
        self.assertEqual(AccessControl(rollout_percentage=100).evaluate_access("u1", "f1"), (ALLOWED, "Access unrestricted to all users"))
        self.assertEqual(
            AccessControl(rollout_percentage=100).evaluate_access("t1", "f1", kind="tenant"),
            (ALLOWED, "Access unrestricted to all tenants"),
        )

    def test_rollout_buckets(self):
        # Buckets were computed from the md5 of "<subject>:<flag>".
        ac = AccessControl(rollout_percentage=50)
        cases = [
            ("u1", "user", DENIED, "User not in rollout: 86% >= 50%"),
            ("u2", "user", ALLOWED, "User in rollout: 6% < 50%"),
            ("u3", "user", DENIED, "User not in rollout: 60% >= 50%"),
            ("t1", "tenant", DENIED, "Tenant not in rollout: 89% >= 50%"),
            ("t2", "tenant", ALLOWED, "Tenant in rollout: 10% < 50%"),
        ]
        for subject, kind, result, reason in cases:
            with self.subTest(subject=subject):
                self.assertEqual(ac.evaluate_access(subject, "f1", kind), (result, reason))

    def test_rollout_is_deterministic(self):
        ac = AccessControl(rollout_percentage=37)
        for i in range(50):
            subject = f"user-{i}"
            with self.subTest(subject=subject):
                first = ac.evaluate_access(subject, "checkout")
                for _ in range(3):
                    self.assertEqual(ac.evaluate_access(subject, "checkout"), first)

    def test_rollout_is_salted_by_flag_key(self):
        self.assertEqual(_rollout_bucket("u1", "f1"), 86)
        self.assertEqual(_rollout_bucket("u1", "f2"), 79)
        buckets = {_rollout_bucket("u1", f"flag-{i}") for i in range(20)}
        self.assertGreater(len(buckets), 1)

    def test_rollout_is_monotonic(self):
        for i in range(200):
            subject = f"user-{i}"
            included = False
            for p in range(0, 101, 5):
                allowed = AccessControl(rollout_percentage=p).evaluate_access(subject, "checkout")[0] is ALLOWED
                if included:
                    self.assertTrue(allowed, f"{subject} dropped out of rollout at {p}%")
                included = allowed
            self.assertTrue(included)

    def test_rollout_distribution(self):
        ac = AccessControl(rollout_percentage=30)
        allowed = sum(ac.evaluate_access(f"user-{i}", "checkout")[0] is ALLOWED for i in range(1000))
        self.assertTrue(230 <= allowed <= 370, allowed)

    def test_precedence(self):
        ac = AccessControl(allowed=("alice",), blocked=("mallory",), rollout_percentage=100)
        self.assertEqual(ac.evaluate_access("mallory", "f1"), (DENIED, "User explicitly blocked"))
        self.assertEqual(ac.evaluate_access("MALLORY", "f1"), (DENIED, "User explicitly blocked"))
        self.assertEqual(ac.evaluate_access("bob", "f1"), (ALLOWED, "Access unrestricted to all users"))

        ac = AccessControl(allowed=("alice",), rollout_percentage=0)
        self.assertEqual(ac.evaluate_access(" Alice ", "f1"), (ALLOWED, "User explicitly allowed"))
        self.assertEqual(ac.evaluate_access("bob", "f1"), (DENIED, "Access restricted to all users"))

    def test_missing_subject(self):
        ac = AccessControl.unrestricted()
        for subject in (None, "", "   "):
            with self.subTest(subject=subject):
                self.assertEqual(ac.evaluate_access(subject, "f1"), (DENIED, "User ID is required"))
        self.assertEqual(ac.evaluate_access(None, "f1", kind="tenant"), (DENIED, "Tenant ID is required"))

    def test_normalization(self):
        ac = AccessControl(allowed=("a", " A ", "", "  ", "b"), blocked=("C", "c"))
        self.assertEqual(ac.allowed, ("a", "b"))
        self.assertEqual(ac.blocked, ("C",))
        self.assertTrue(ac.is_explicitly_managed("B"))
        self.assertTrue(ac.is_explicitly_managed("c"))
        self.assertFalse(ac.is_explicitly_managed("d"))
        self.assertFalse(ac.is_explicitly_managed(""))

    def test_validation(self):
        for p in (-1, 101):
            with self.subTest(percentage=p):
                with self.assertRaisesRegex(ValueError, "between 0 and 100"):
                    AccessControl(rollout_percentage=p)
        with self.assertRaisesRegex(ValueError, "both allowed and blocked"):
            AccessControl(allowed=("Alice",), blocked=("alice",))
        with self.assertRaises(TypeError):
            AccessControl(rollout_percentage=True)

    def test_has_access_restrictions(self):
        cases = [
            (AccessControl.unrestricted(), False),
            (AccessControl(), False),
            (AccessControl(rollout_percentage=50), True),
            (AccessControl(allowed=("a",), rollout_percentage=100), True),
            (AccessControl(blocked=("a",)), True),
        ]
        for ac, expected in cases:
            with self.subTest(ac=ac):
                self.assertEqual(ac.has_access_restrictions(), expected)

    def test_mutators(self):
        base = AccessControl(rollout_percentage=10)

        ac = base.with_allowed_subject("alice")
        self.assertEqual(ac, AccessControl(allowed=("alice",), rollout_percentage=10))
        self.assertEqual(base.allowed, ())

        # Moving between lists never leaves the subject in both.
        ac = ac.with_blocked_subject("ALICE")
        self.assertEqual((ac.allowed, ac.blocked), ((), ("ALICE",)))
        ac = ac.with_allowed_subject("alice")
        self.assertEqual((ac.allowed, ac.blocked), (("alice",), ()))

        self.assertIs(ac.with_allowed_subject("Alice"), ac)

        ac = ac.without_subject("ALICE")
        self.assertEqual(ac, base)
        self.assertIs(ac.without_subject("nobody"), ac)

        ac = ac.with_rollout_percentage(75)
        self.assertEqual(ac.rollout_percentage, 75)
        with self.assertRaisesRegex(ValueError, "between 0 and 100"):
            ac.with_rollout_percentage(150)

        for subject in ("", "  ", None):
            with self.subTest(subject=subject):
                with self.assertRaisesRegex(ValueError, "cannot be empty"):
                    base.with_allowed_subject(subject)
                with self.assertRaisesRegex(ValueError, "cannot be empty"):
                    base.with_blocked_subject(subject)
                with self.assertRaisesRegex(ValueError, "cannot be empty"):
                    base.without_subject(subject)
