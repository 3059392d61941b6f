import pathlib
import sys
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lanefleet.resilience import RetryPolicy, exponential_backoff, run_with_retry, zero_delay_policy


class ResilienceTests(unittest.TestCase):
    def test_backoff_grows_and_caps(self):
        self.assertEqual(exponential_backoff(1, 0.5), 0.5)
        self.assertEqual(exponential_backoff(3, 0.5), 2.0)
        self.assertEqual(exponential_backoff(20, 0.5), 30.0)
        self.assertEqual(exponential_backoff(2, 0.0), 0.0)

    def test_policy_sleeps_through_injected_clock(self):
        slept = []
        policy = RetryPolicy(max_attempts=3, base_delay=0.1, sleep=slept.append)
        calls = []

        def flaky(attempt):
            calls.append(attempt)
            if attempt < 3:
                raise ConnectionError("remote hung up")
            return "ok"

        self.assertEqual(run_with_retry(flaky, policy, retry_on=(ConnectionError,)), "ok")
        self.assertEqual(calls, [1, 2, 3])
        self.assertEqual(slept, [0.1, 0.2])

    def test_last_error_is_reraised(self):
        retried = []

        def always(attempt):
            raise ValueError(f"attempt {attempt}")

        with self.assertRaises(ValueError) as ctx:
            run_with_retry(always, zero_delay_policy(2), on_retry=lambda attempt, err: retried.append(attempt))
        self.assertEqual(str(ctx.exception), "attempt 2")
        self.assertEqual(retried, [1])

    def test_filter_rejects_some_errors_of_a_listed_type(self):
        calls = []

        def push(attempt):
            calls.append(attempt)
            raise ConnectionError("permission denied" if attempt == 2 else "rejected")

        with self.assertRaises(ConnectionError) as ctx:
            run_with_retry(
                push,
                zero_delay_policy(5),
                retry_on=(ConnectionError,),
                should_retry=lambda err: str(err) == "rejected",
            )
        self.assertEqual(str(ctx.exception), "permission denied")
        self.assertEqual(calls, [1, 2])

    def test_error_from_retry_callback_stops_the_loop(self):
        calls = []

        def flaky(attempt):
            calls.append(attempt)
            raise ValueError("again")

        def give_up(attempt, err):
            raise KeyError("rebase failed")

        with self.assertRaises(KeyError):
            run_with_retry(flaky, zero_delay_policy(3), retry_on=(ValueError,), on_retry=give_up)
        self.assertEqual(calls, [1])

    def test_unlisted_errors_are_not_retried(self):
        calls = []

        def boom(attempt):
            calls.append(attempt)
            raise KeyError("nope")

        with self.assertRaises(KeyError):
            run_with_retry(boom, zero_delay_policy(3), retry_on=(ValueError,))
        self.assertEqual(calls, [1])


if __name__ == "__main__":
    unittest.main()
