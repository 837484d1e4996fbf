import logging

from backoffice.graph import creates_cycle, expand, topological_order


def children_of(edges):
    return lambda node: edges.get(node, [])


def test_children_come_before_parents():
    edges = {"dish": ["sauce", "dough"], "sauce": ["stock"], "dough": ["stock"]}
    order, back_edges = topological_order(["dish", "sauce", "dough", "stock"], children_of(edges))

    assert back_edges == []
    assert sorted(order) == ["dish", "dough", "sauce", "stock"]
    assert order.index("stock") < order.index("sauce") < order.index("dish")
    assert order.index("dough") < order.index("dish")


def test_cycle_is_reported_and_broken(caplog):
    edges = {"a": ["b"], "b": ["a"]}
    with caplog.at_level(logging.ERROR, logger="backoffice.graph"):
        order, back_edges = topological_order(["a", "b"], children_of(edges))

    assert sorted(order) == ["a", "b"]
    assert back_edges == [("b", "a")]
    assert "Circular dependency" in caplog.text


def test_self_loop_terminates():
    order, back_edges = topological_order(["a"], children_of({"a": ["a"]}))
    assert order == ["a"]
    assert back_edges == [("a", "a")]


def test_creates_cycle():
    edges = {"a": ["b"], "b": ["c"]}
    assert creates_cycle("c", "a", children_of(edges))
    assert creates_cycle("a", "a", children_of(edges))
    assert not creates_cycle("a", "c", children_of(edges))
    assert not creates_cycle("d", "a", children_of(edges))


def test_expand_accumulates_shared_children_per_path():
    edges = {"d1": [("p", 2.0)], "d2": [("p", 3.0)], "p": [("q", 0.5)]}
    totals = {}

    def get_children(node, multiplier):
        return [(child, multiplier * ratio) for child, ratio in edges.get(node, [])]

    def process(node, multiplier):
        totals[node] = totals.get(node, 0.0) + multiplier

    expand([("d1", 1.0), ("d2", 2.0)], get_children, process)

    assert totals == {"d1": 1.0, "d2": 2.0, "p": 8.0, "q": 4.0}


def test_expand_skips_cycles(caplog):
    edges = {"a": ["b"], "b": ["a"]}
    visits = []

    with caplog.at_level(logging.WARNING, logger="backoffice.graph"):
        expand(
            [("a", 1.0)],
            lambda node, m: [(child, m) for child in edges[node]],
            lambda node, m: visits.append(node),
        )

    assert visits == ["a", "b"]
    assert "branch skipped" in caplog.text


def test_expand_drops_non_positive_multipliers():
    visits = []
    expand(
        [("a", 1.0)],
        lambda node, m: [("b", 0.0), ("c", float("nan"))] if node == "a" else [],
        lambda node, m: visits.append(node),
    )
    assert visits == ["a"]
