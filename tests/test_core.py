from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tickrunner.core import cron
from tickrunner.core.config import Settings, _parse_env_file
from tickrunner.core.exceptions import InvalidCronExpression, UnknownTaskType
from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.core.timer import Timer
from tickrunner.registry import TaskRegistry


class TestCron:
    def test_validate_normalises_whitespace(self):
        """Extra spaces collapse to a canonical expression."""
        assert cron.validate("*/5   *  * * *") == "*/5 * * * *"

    @pytest.mark.parametrize("expr", ["", "* * * *", "61 * * * *", "not a cron"])
    def test_validate_rejects_garbage(self, expr):
        """Malformed expressions raise InvalidCronExpression."""
        with pytest.raises(InvalidCronExpression):
            cron.validate(expr)

    def test_invalid_cron_is_a_value_error(self):
        """Callers catching ValueError also catch cron errors."""
        with pytest.raises(ValueError):
            cron.validate("* * *")

    def test_next_run_is_strictly_after(self):
        """A reference exactly on a match yields the following match."""
        ref = datetime(2024, 1, 1, 0, 1, 0)
        assert cron.next_run("* * * * *", after_utc=ref, tz="UTC") == datetime(2024, 1, 1, 0, 2, 0)

    def test_previous_run_is_at_or_before(self):
        """On a match the instant itself counts; otherwise the previous match."""
        assert cron.previous_run("* * * * *", before_utc=datetime(2024, 1, 1, 0, 1, 0), tz="UTC") == datetime(
            2024, 1, 1, 0, 1, 0
        )
        assert cron.previous_run("* * * * *", before_utc=datetime(2024, 1, 1, 0, 0, 30), tz="UTC") == datetime(
            2024, 1, 1, 0, 0, 0
        )

    def test_expression_evaluated_in_configured_timezone(self):
        """09:00 in Athens (UTC+2 in winter) is 07:00 UTC."""
        nxt = cron.next_run("0 9 * * *", after_utc=datetime(2024, 1, 1, 0, 0), tz="Europe/Athens")
        assert nxt == datetime(2024, 1, 1, 7, 0)

    def test_repeated_hour_on_fall_back(self):
        """02:10 Berlin occurs twice on 2024-10-27; the second pass still moves forward."""
        ref = datetime(2024, 10, 27, 1, 10, 30)
        assert cron.next_run("* * * * *", after_utc=ref, tz="Europe/Berlin") == datetime(2024, 10, 27, 1, 11)
        assert cron.previous_run("* * * * *", before_utc=datetime(2024, 10, 27, 1, 11), tz="Europe/Berlin") == datetime(
            2024, 10, 27, 1, 11
        )

    def test_next_run_always_later_across_fall_back(self):
        """Every reference minute around the switch yields a later run."""
        ref = datetime(2024, 10, 26, 23, 0, 30)
        for _ in range(210):
            nxt = cron.next_run("* * * * *", after_utc=ref, tz="Europe/Berlin")
            assert ref < nxt <= ref + timedelta(minutes=61)
            ref += timedelta(minutes=1)

    def test_skipped_hour_on_spring_forward(self):
        """02:30 does not exist in Berlin on 2024-03-31; it runs at 01:30 UTC."""
        nxt = cron.next_run("30 2 * * *", after_utc=datetime(2024, 3, 31, 0, 0), tz="Europe/Berlin")
        assert nxt == datetime(2024, 3, 31, 1, 30)

    def test_unknown_timezone_falls_back_to_utc(self):
        """A typo in TIMEZONE must not break scheduling."""
        assert cron.resolve_timezone("Mars/Olympus").key == "UTC"


class TestKVBag:
    def test_dotted_paths(self):
        """set() creates intermediate objects; get() walks them."""
        bag = KVBag()
        bag.set("a.b.c", 1)
        assert bag.get("a.b.c") == 1
        assert bag.get("a.b") == {"c": 1}
        assert bag.get("a.x", "default") == "default"
        assert "a.b" in bag

    def test_remove_prunes_empty_parents(self):
        """Removing the last leaf leaves no empty shells behind."""
        bag = KVBag({"task": {"resumed": True}, "keep": 1})
        bag.remove("task.resumed")
        assert bag.to_dict() == {"keep": 1}

    def test_remove_keeps_non_empty_parents(self):
        """Siblings survive the removal."""
        bag = KVBag({"a": {"b": 1, "c": 2}})
        bag.remove("a.b")
        assert bag.to_dict() == {"a": {"c": 2}}

    def test_readonly_rejects_writes(self):
        """Frozen bags raise on every mutation."""
        bag = KVBag({"x": 1}).frozen()
        with pytest.raises(TypeError):
            bag.set("y", 2)
        with pytest.raises(TypeError):
            bag.remove("x")

    def test_frozen_is_a_copy(self):
        """Mutating the original never leaks into a frozen copy."""
        bag = KVBag({"x": {"y": 1}})
        frozen = bag.frozen()
        bag.set("x.y", 2)
        assert frozen.get("x.y") == 1

    def test_json_round_trip_and_blank_input(self):
        """Blank JSON is an empty bag; non-object JSON is rejected."""
        assert KVBag("").to_dict() == {}
        assert KVBag('{"a": 1}') == {"a": 1}
        with pytest.raises(ValueError):
            KVBag("[1, 2]")


class TestStatus:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, Status.NO_EXIT),
            (0, Status.OK),
            (123, Status.WILL_RESUME),
            (Status.ERROR, Status.ERROR),
            ("0", Status.INVALID_EXIT),
            (True, Status.INVALID_EXIT),
            (999, Status.INVALID_EXIT),
        ],
    )
    def test_from_return(self, value, expected):
        """Callback return values map onto statuses."""
        assert Status.from_return(value) is expected

    def test_failures(self):
        """Only OK, RUNNING, WILL_RESUME and INITIAL_SCHEDULE are not failures."""
        assert not Status.OK.is_failure
        assert not Status.WILL_RESUME.is_failure
        assert Status.EXCEPTION.is_failure
        assert Status.NO_EXIT.is_failure
        assert Status.NO_ROUTINE.for_humans() == "Unknown task type"


class TestTimer:
    def test_budget_is_biased(self):
        """60s at 75% leaves 45 usable seconds."""
        now = [0.0]
        timer = Timer(60, 75, clock=lambda: now[0])
        assert timer.limit == 45
        now[0] = 44
        assert not timer.expired()
        now[0] = 45
        assert timer.expired()

    def test_sub_budget(self):
        """A sub-budget is a share of what is left, not of the whole."""
        now = [0.0]
        timer = Timer(100, 100, clock=lambda: now[0])
        now[0] = 60
        sub = timer.sub_budget(50)
        assert sub.limit == pytest.approx(20)


class TestSettings:
    def test_clamping(self):
        """Out of range values are clamped; junk integers use the default."""
        s = Settings(
            {"MAX_EXECUTION": "1", "EXECUTION_BIAS": "500", "CRON_STUCK_THRESHOLD": "1", "DBBACKUP_MAXFILES": "x"}
        )
        assert s.MAX_EXECUTION == 5
        assert s.EXECUTION_BIAS == 100
        assert s.CRON_STUCK_THRESHOLD == 3
        assert s.DBBACKUP_MAXFILES == 15

    def test_database_uri(self):
        """DATABASE_URL wins; otherwise a PyMySQL URL is built."""
        assert Settings({"DATABASE_URL": "sqlite://"}).sqlalchemy_database_uri == "sqlite://"
        uri = Settings({"DB_USER": "u", "DB_PASSWORD": "p", "DB_HOST": "h", "DB_NAME": "d"}).sqlalchemy_database_uri
        assert uri == "mysql+pymysql://u:p@h:3306/d?charset=utf8mb4"

    def test_env_file_parser(self):
        """Comments and blank lines are skipped, quotes stripped."""
        parsed = _parse_env_file('# comment\n\nA=1\nB="two words"\nbroken line\nMAIL_TO=a@x, b@y\n')
        assert parsed == {"A": "1", "B": "two words", "MAIL_TO": "a@x, b@y"}
        assert Settings(parsed).MAIL_TO == ["a@x", "b@y"]


class TestRegistry:
    def test_decorator_and_lookup(self):
        """Types are case-insensitive; the decorator registers the function."""
        registry = TaskRegistry()

        @registry.task("Cleanup", description="Clean up")
        def cleanup(storage, params):
            return Status.OK

        assert registry.has("cleanup")
        assert registry.resolve(" CLEANUP ") is cleanup
        assert registry.describe("cleanup") == "Clean up"
        assert registry.describe("other") == "other"

    def test_remove_and_unknown(self):
        """A removed type no longer resolves."""
        registry = TaskRegistry()
        registry.register("noop", lambda storage, params: Status.OK)
        registry.remove("noop")
        with pytest.raises(UnknownTaskType):
            registry.resolve("noop")

    def test_rejects_bad_registrations(self):
        """Empty names and non-callables are refused."""
        registry = TaskRegistry()
        with pytest.raises(ValueError):
            registry.register("  ", lambda storage, params: Status.OK)
        with pytest.raises(TypeError):
            registry.register("noop", "not callable")
