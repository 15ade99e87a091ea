#!/usr/bin/env python

import subprocess
import unittest

import installzfsmirror.retry as retrymod


class RetryTest(unittest.TestCase):

    def test_retries_work(self):
        counts = []

        @retrymod.retry(2)
        def f():
            counts.append(1)
            raise retrymod.Retryable()

        self.assertRaises(retrymod.Retryable, f)
        self.assertEqual(len(counts), 3)

    def test_each_call_has_its_own_budget(self):
        counts = []

        @retrymod.retry(1)
        def f():
            counts.append(1)
            if len(counts) % 2:
                raise retrymod.Retryable()
            return len(counts)

        self.assertEqual(f(), 2)
        self.assertEqual(f(), 4)

    def test_other_exceptions_are_not_retried(self):
        counts = []

        @retrymod.retry(5)
        def f():
            counts.append(1)
            raise ValueError()

        self.assertRaises(ValueError, f)
        self.assertEqual(len(counts), 1)


class LadderTest(unittest.TestCase):

    def test_goal_already_reached(self):
        ran = []
        ok = retrymod.run_ladder(
            [retrymod.Strategy("a", lambda: ran.append("a"))], lambda: True
        )
        self.assertTrue(ok)
        self.assertEqual(ran, [])

    def test_stops_at_first_success(self):
        ran = []
        state = {"done": False}

        def b():
            ran.append("b")
            state["done"] = True

        ok = retrymod.run_ladder(
            [
                retrymod.Strategy("a", lambda: ran.append("a")),
                retrymod.Strategy("b", b),
                retrymod.Strategy("c", lambda: ran.append("c")),
            ],
            lambda: state["done"],
        )
        self.assertTrue(ok)
        self.assertEqual(ran, ["a", "b"])

    def test_tolerated_failures_continue(self):
        ran = []

        def fail():
            ran.append("fail")
            raise subprocess.CalledProcessError(1, ["false"])

        ok = retrymod.run_ladder(
            [retrymod.Strategy("a", fail), retrymod.Strategy("b", fail)],
            lambda: False,
        )
        self.assertFalse(ok)
        self.assertEqual(ran, ["fail", "fail"])

    def test_other_failures_propagate(self):
        def boom():
            raise RuntimeError("boom")

        self.assertRaises(
            RuntimeError,
            retrymod.run_ladder,
            [retrymod.Strategy("a", boom)],
            lambda: False,
        )


if __name__ == "__main__":
    unittest.main()
