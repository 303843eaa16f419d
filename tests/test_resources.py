"""Tests for the per-agent resource registry."""

from relaymind.resources import ResourceRegistry


class TestResourceRegistry:
    """Tests for registering and closing handles."""

    def test_register_and_get(self):
        resources = ResourceRegistry(owner="a1")
        resources.register("db", "connection")
        assert resources.get("db") == "connection"
        assert resources.get("missing", "fallback") == "fallback"
        assert "db" in resources
        assert len(resources) == 1

    def test_replacing_a_key_closes_the_old_handle(self):
        closed = []
        resources = ResourceRegistry()
        resources.register("browser", "first", closed.append)
        resources.register("browser", "second", closed.append)
        assert closed == ["first"]
        assert resources.get("browser") == "second"

    def test_close_one(self):
        closed = []
        resources = ResourceRegistry()
        resources.register("db", "conn", closed.append)
        assert resources.close("db") is True
        assert resources.close("db") is False
        assert closed == ["conn"]
        assert resources.keys() == []

    def test_close_all_in_reverse_order(self):
        closed = []
        resources = ResourceRegistry()
        for key in ("a", "b", "c"):
            resources.register(key, key, closed.append)
        resources.close_all()
        assert closed == ["c", "b", "a"]
        assert len(resources) == 0

    def test_failing_closer_does_not_stop_the_rest(self):
        closed = []

        def broken(handle):
            raise OSError("already gone")

        resources = ResourceRegistry()
        resources.register("a", "a", closed.append)
        resources.register("b", "b", broken)
        resources.register("c", "c", closed.append)

        resources.close_all()

        assert closed == ["c", "a"]

    def test_handle_without_closer(self):
        resources = ResourceRegistry()
        resources.register("plain", object())
        assert resources.close("plain") is True
