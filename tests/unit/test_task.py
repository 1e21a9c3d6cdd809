"""
Unit tests for tasks and task sets.
"""

import pytest

from gearqueue.constants import JobType, TaskEvent
from gearqueue.exceptions import ProtocolError, UnknownHandleError
from gearqueue.types.task import Task, TaskSet, derive_uniq, encode_argument


class TestTask:
    """Tests for a single task."""

    def test_uniq_is_deterministic(self):
        """Test that identical submissions share a uniqueness key."""
        assert Task("sum", [1, 2]).uniq == Task("sum", [1, 2]).uniq
        assert Task("sum", {"b": 1, "a": 2}).uniq == Task("sum", {"a": 2, "b": 1}).uniq

    def test_uniq_depends_on_type_and_args(self):
        """Test that the key changes with type, function and argument."""
        base = Task("sum", [1, 2]).uniq

        assert Task("sum", [1, 2], type=JobType.HIGH).uniq != base
        assert Task("sum", [2, 1]).uniq != base
        assert Task("add", [1, 2]).uniq != base
        assert base == derive_uniq("sum", [1, 2], JobType.NORMAL)

    def test_explicit_uniq_kept(self):
        """Test that a caller-supplied key is used."""
        assert Task("sum", [1], uniq="mine").uniq == "mine"

    def test_invalid_type(self):
        """Test that unknown job types are refused."""
        with pytest.raises(ValueError, match="Unknown job type"):
            Task("sum", [1], type=9)

    def test_type_coerced(self):
        """Test that integer types become JobType members."""
        task = Task("sum", [1], type=2)

        assert task.type is JobType.BACKGROUND
        assert task.is_background

    @pytest.mark.parametrize(
        "arg,expected",
        [
            (None, ""),
            ("text", "text"),
            (b"\x00raw", b"\x00raw"),
            (5, "5"),
            ([1, 2], "[1, 2]"),
            ({"a": 1}, '{"a": 1}'),
        ],
    )
    def test_payload(self, arg, expected):
        """Test the wire form of task arguments."""
        assert encode_argument(arg) == expected
        assert Task("f", arg).payload == expected

    def test_complete_callbacks_in_order(self):
        """Test that complete listeners run in registration order."""
        task = Task("sum", [1, 2], uniq="u1")
        task.handle = "H:1"
        calls = []
        task.attach_callback(lambda *args: calls.append(("first", *args)))
        task.attach_callback(lambda *args: calls.append(("second", *args)))

        task.complete({"sum": 3})

        assert task.finished
        assert task.result == {"sum": 3}
        assert calls == [
            ("first", "sum", "H:1", {"sum": 3}, "u1"),
            ("second", "sum", "H:1", {"sum": 3}, "u1"),
        ]

    def test_fail_callbacks(self):
        """Test that fail listeners receive the task."""
        task = Task("sum", [1])
        failed = []
        task.attach_callback(failed.append, TaskEvent.FAIL)

        task.fail()

        assert task.finished
        assert failed == [task]

    def test_status_callbacks(self):
        """Test that status listeners receive the progress."""
        task = Task("sum", [1])
        task.handle = "H:1"
        statuses = []
        task.attach_callback(lambda *args: statuses.append(args), "status")

        task.status(3, 10)

        assert statuses == [("sum", "H:1", 3, 10)]
        assert not task.finished

    def test_attach_invalid_callback(self):
        """Test that invalid listeners are refused."""
        task = Task("sum", [1])

        with pytest.raises(TypeError):
            task.attach_callback("nope")
        with pytest.raises(ValueError):
            task.attach_callback(print, "bogus")

    def test_attach_callback_chains(self):
        """Test that attach_callback returns the task."""
        task = Task("sum", [1])
        assert task.attach_callback(print) is task
        assert task.callbacks(TaskEvent.COMPLETE) == [print]


class TestTaskSet:
    """Tests for task sets."""

    def test_add_and_count(self):
        """Test that the live count tracks unfinished tasks."""
        task_set = TaskSet([Task("f", 1), Task("f", 2)])

        assert len(task_set) == 2
        assert task_set.remaining == 2
        assert not task_set.finished()

    def test_duplicate_uniq_is_ignored(self):
        """Test that identical submissions are coalesced."""
        first = Task("f", 1)
        task_set = TaskSet([first, Task("f", 1)])

        assert len(task_set) == 1
        assert task_set.remaining == 1
        assert list(task_set) == [first]

    def test_task_in_other_set(self):
        """Test that a task cannot belong to two sets."""
        task = Task("f", 1)
        TaskSet([task])

        with pytest.raises(ValueError):
            TaskSet([task])

    def test_membership(self):
        """Test the in operator."""
        task = Task("f", 1)
        task_set = TaskSet([task])

        assert task in task_set
        assert Task("f", 1) not in task_set

    def test_finish_counts_once(self):
        """Test that finishing a task twice decrements once."""
        task = Task("f", 1)
        task_set = TaskSet([task, Task("f", 2)])

        task_set.finish(task)
        task_set.finish(task)

        assert task_set.remaining == 1

    def test_finished_fires_once(self):
        """Test that the set callback runs exactly once."""
        first, second = Task("f", 1), Task("f", 2)
        task_set = TaskSet([first, second])
        results = []
        task_set.attach_callback(results.append)

        task_set.finish(first)
        first.complete("one")
        assert not task_set.finished()

        task_set.finish(second)
        second.complete("two")
        assert task_set.finished()
        assert task_set.finished()

        assert results == [["one", "two"]]

    def test_handles(self):
        """Test registering and looking up handles."""
        task = Task("f", 1)
        task_set = TaskSet([task])

        task_set.register_handle("H:1", task)
        task_set.register_handle("H:1", task)

        assert task_set.get_task("H:1") is task

    def test_handle_conflict(self):
        """Test that a handle cannot name two tasks."""
        first, second = Task("f", 1), Task("f", 2)
        task_set = TaskSet([first, second])
        task_set.register_handle("H:1", first)

        with pytest.raises(ProtocolError):
            task_set.register_handle("H:1", second)

    def test_unknown_handle(self):
        """Test that an unregistered handle raises."""
        with pytest.raises(UnknownHandleError):
            TaskSet().get_task("H:404")

    def test_attach_invalid_callback(self):
        """Test that a non-callable set listener is refused."""
        with pytest.raises(TypeError):
            TaskSet().attach_callback(None)
