"""RollingLog: bounded retention, independent cursors and batch atomicity."""

import threading

import pytest

from runtime_utils.services.rolling_log import RollingLog


class TestRetention:
    def test_keeps_only_the_newest_lines(self):
        log = RollingLog(5)
        log.add_lines(f"line {i}" for i in range(12))

        assert len(log) == 5
        assert log.total_lines == 12
        assert log.discarded == 7
        assert log.snapshot() == [f"line {i}" for i in range(7, 12)]

    def test_reader_that_fell_behind_skips_evicted_lines(self):
        log = RollingLog(3)
        log.add_lines(["a", "b"])
        lines, cursor = log.get(0)
        assert lines == ["a", "b"]

        log.add_lines(["c", "d", "e", "f"])
        lines, cursor = log.get(cursor)

        assert lines == ["d", "e", "f"]
        assert cursor == 6

    def test_caught_up_cursor_returns_nothing(self):
        log = RollingLog(10)
        log.add_lines(["only"])
        _, cursor = log.get(0)

        lines, same = log.get(cursor)
        assert lines == []
        assert same == cursor

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            RollingLog(0)

    def test_to_text_joins_with_newlines(self):
        log = RollingLog(10)
        log.add_lines(["one", "two"])
        assert log.to_text() == "one\ntwo"


class TestReaders:
    def test_readers_have_independent_cursors(self):
        log = RollingLog(100)
        log.add_lines(str(i) for i in range(10))

        first, cursor_a = log.get(0, 4)
        second, cursor_b = log.get(0, 10)
        rest, _ = log.get(cursor_a, 100)

        assert first == ["0", "1", "2", "3"]
        assert second == [str(i) for i in range(10)]
        assert rest == [str(i) for i in range(4, 10)]
        assert cursor_b == 10

    def test_zero_max_lines_reads_nothing(self):
        log = RollingLog(10)
        log.add_lines(["x"])
        assert log.get(0, 0) == ([], 0)


class TestConcurrentWriters:
    def test_batches_never_interleave(self):
        log = RollingLog(100_000)
        batch_size = 50

        def writer(name: str) -> None:
            for batch in range(40):
                log.add_lines(f"{name}:{batch}:{i}" for i in range(batch_size))

        threads = [threading.Thread(target=writer, args=(f"w{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        lines = log.snapshot()
        assert len(lines) == 4 * 40 * batch_size

        for start in range(0, len(lines), batch_size):
            chunk = lines[start : start + batch_size]
            prefixes = {line.rsplit(":", 1)[0] for line in chunk}
            assert len(prefixes) == 1
            assert [int(line.rsplit(":", 1)[1]) for line in chunk] == list(range(batch_size))
