import pytest

from stackforge.core.errors import CardinalityError, ConfigurationError, CycleError
from stackforge.core.models import Declaration
from stackforge.expressions.context import BindingContext
from stackforge.expressions.parser import parse_template
from stackforge.planning.expander import ResourceExpander

COUNTED_YAML = """
variable:
  n: {default: 2, type: number}
resource:
  thing:
    item:
      count: '${var.n}'
      attributes:
        name: 'item-${count.index}'
    summary:
      attributes:
        total: '${length(thing.item[*].id)}'
output:
  names: {value: '${thing.item[*].name}'}
"""


@pytest.mark.parametrize("n", [0, 1, 3])
def test_expander_produces_exactly_n_instances(n):
    """
    CARDINALITY TEST: n >= 0 yields indices 0..n-1, and n=0 is an empty,
    non-error collection.
    """
    declaration = Declaration(type="thing", name="item", count=parse_template("${var.n}"),
                              attributes={"name": parse_template("item-${count.index}")})
    ctx = BindingContext.create({"n": n}, {})
    instances = ResourceExpander().expand(declaration, ctx)

    assert [i.index for i in instances] == list(range(n))
    assert [i.planned["name"] for i in instances] == [f"item-{i}" for i in range(n)]
    assert [i.address for i in instances] == [f"thing.item[{i}]" for i in range(n)]


def test_declaration_without_count_is_a_single_object():
    declaration = Declaration(type="thing", name="one", attributes={"x": parse_template("1")})
    instances = ResourceExpander().expand(declaration, BindingContext())
    assert len(instances) == 1
    assert instances[0].index is None
    assert instances[0].address == "thing.one"


@pytest.mark.parametrize("count", ["${-1}", "${1.5}", "many", "${true}"])
def test_invalid_cardinality_rejected(count):
    declaration = Declaration(type="thing", name="bad", count=parse_template(count))
    with pytest.raises(CardinalityError) as info:
        ResourceExpander().expand(declaration, BindingContext())
    assert info.value.path == "thing.bad.count"


def test_zero_count_references_resolve_to_empty(planner):
    plan = planner(COUNTED_YAML, {"n": 0})
    assert plan.counts["thing.item"] == 0
    assert [i.address for i in plan.instances] == ["thing.summary"]
    # A reference to a zero-count declaration is an empty collection, not an edge
    assert plan.graph.edges == []
    assert plan.instances_of("thing.summary")[0].planned["total"] == 0


def test_unindexed_reference_fans_out(planner):
    plan = planner(COUNTED_YAML, {"n": 3})
    assert plan.graph.dependencies["thing.summary"] == {"thing.item[0]", "thing.item[1]", "thing.item[2]"}


def test_dev_scenario_shape(planner, stack_yaml):
    plan = planner(stack_yaml, {"env": "dev"})

    assert plan.counts == {"network.net": 1, "subnet.sub": 1, "server.srv": 1}
    assert [i.address for i in plan.instances] == ["network.net", "subnet.sub[0]", "server.srv"]
    assert plan.graph.depth() == 3
    assert plan.graph.topological_order() == ["network.net", "subnet.sub[0]", "server.srv"]
    assert plan.graph.levels() == {"network.net": 1, "subnet.sub[0]": 2, "server.srv": 3}


def test_prod_scenario_shape(planner, stack_yaml):
    plan = planner(stack_yaml, {"env": "prod"})
    graph = plan.graph

    assert plan.counts["subnet.sub"] == 2
    assert graph.dependencies["server.srv"] == {"subnet.sub[0]"}
    assert graph.dependencies["subnet.sub[0]"] == {"network.net"}
    assert graph.dependencies["subnet.sub[1]"] == {"network.net"}
    # Both subnets sit on the same level, so nothing orders them against each other
    levels = graph.levels()
    assert levels["subnet.sub[0]"] == levels["subnet.sub[1]"] == 2
    assert graph.depth() == 3
    assert plan.instances_of("subnet.sub")[1].planned["cidr"] == "10.0.1.0/24"


def test_rebuild_is_isomorphic(planner, stack_yaml):
    """DETERMINISM TEST: same inputs, same instances, edges and order."""
    first = planner(stack_yaml, {"env": "prod"})
    second = planner(stack_yaml, {"env": "prod"})

    assert [i.address for i in first.instances] == [i.address for i in second.instances]
    assert first.graph.edges == second.graph.edges
    assert first.graph.topological_order() == second.graph.topological_order()


CYCLE_YAML = """
resource:
  thing:
    a: {attributes: {peer: '${thing.b.id}'}}
    b: {attributes: {peer: '${thing.c.id}'}}
    c: {attributes: {peer: '${thing.a.id}'}}
"""


def test_cycle_reported_with_full_chain(planner):
    with pytest.raises(CycleError) as info:
        planner(CYCLE_YAML)
    assert info.value.cycle == ["thing.a", "thing.b", "thing.c", "thing.a"]
    assert "thing.a -> thing.b -> thing.c -> thing.a" in str(info.value)


def test_self_reference_is_a_cycle(planner):
    text = "resource:\n  thing:\n    a: {attributes: {me: '${thing.a.id}'}}\n"
    with pytest.raises(CycleError) as info:
        planner(text)
    assert info.value.cycle == ["thing.a", "thing.a"]


def test_depends_on_adds_edges(planner):
    text = """
resource:
  thing:
    first: {count: 2}
    second: {depends_on: [thing.first]}
"""
    plan = planner(text)
    assert plan.graph.dependencies["thing.second"] == {"thing.first[0]", "thing.first[1]"}


def test_index_computed_from_count_index(planner):
    text = """
resource:
  subnet:
    sub: {count: 2}
  server:
    srv:
      count: 2
      attributes: {subnet_id: '${subnet.sub[count.index].id}'}
"""
    plan = planner(text)
    assert plan.graph.dependencies["server.srv[0]"] == {"subnet.sub[0]"}
    assert plan.graph.dependencies["server.srv[1]"] == {"subnet.sub[1]"}


def test_index_out_of_range_is_a_configuration_error(planner):
    text = """
resource:
  subnet:
    sub: {count: 1}
  server:
    srv: {attributes: {subnet_id: '${subnet.sub[3].id}'}}
"""
    with pytest.raises(ConfigurationError) as info:
        planner(text)
    assert info.value.path == "server.srv.attributes.subnet_id"


@pytest.mark.parametrize("template", [
    "${network.net.id}-${subnet.sub[0].id}",
    "${subnet.sub[length(network.net.tags)].id}",
])
def test_indexing_a_zero_count_declaration_fails_at_plan_time(planner, template):
    """
    EMPTY INDEX TEST: an indexed reference into count 0 is rejected while
    planning, even when the rest of the template waits on resource state.
    """
    text = f"""
resource:
  network:
    net: {{}}
  subnet:
    sub: {{count: 0}}
  server:
    srv: {{attributes: {{name: '{template}'}}}}
"""
    with pytest.raises(ConfigurationError) as info:
        planner(text)
    assert info.value.path == "server.srv.attributes.name"


def test_reference_through_local_creates_edge(planner):
    text = """
locals:
  net_id: '${network.net.id}'
resource:
  network:
    net: {}
  subnet:
    sub: {attributes: {network_id: '${local.net_id}'}}
"""
    plan = planner(text)
    assert plan.graph.dependencies["subnet.sub"] == {"network.net"}
