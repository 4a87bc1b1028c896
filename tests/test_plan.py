import pytest

from twotier.errors import DependencyCycleError, TopologyError
from twotier.plan import ResourcePlan


def _ids(specs):
    return [spec.logical_id for spec in specs]


def test_dependencies_precede_dependents():
    plan = ResourcePlan()
    plan.add("Instance", "AWS::RDS::DBInstance", depends_on=["SubnetGroup", "Secret"])
    plan.add("SubnetGroup", "AWS::RDS::DBSubnetGroup", depends_on=["Vpc"])
    plan.add("Secret", "AWS::SecretsManager::Secret")
    plan.add("Vpc", "AWS::EC2::VPC")

    order = _ids(plan.ordered())
    assert order.index("Vpc") < order.index("SubnetGroup") < order.index("Instance")
    assert order.index("Secret") < order.index("Instance")


def test_ties_keep_insertion_order():
    plan = ResourcePlan()
    for logical_id in ["C", "A", "B"]:
        plan.add(logical_id, "AWS::CloudFormation::WaitConditionHandle")
    plan.add("D", "AWS::CloudFormation::WaitConditionHandle", depends_on=["B"])

    assert _ids(plan.ordered()) == ["C", "A", "B", "D"]


def test_ordering_is_deterministic():
    def build():
        plan = ResourcePlan()
        plan.add("Vpc", "AWS::EC2::VPC")
        plan.add("Igw", "AWS::EC2::InternetGateway")
        plan.add("SubnetA", "AWS::EC2::Subnet", depends_on=["Vpc"])
        plan.add("SubnetB", "AWS::EC2::Subnet", depends_on=["Vpc"])
        plan.add("Route", "AWS::EC2::Route", depends_on=["SubnetB", "Igw"])
        return plan

    assert _ids(build().ordered()) == _ids(build().ordered()) == ["Vpc", "Igw", "SubnetA", "SubnetB", "Route"]


def test_cycle_detected():
    plan = ResourcePlan()
    plan.add("A", "X", depends_on=["B"])
    plan.add("B", "X", depends_on=["A"])
    plan.add("C", "X")

    with pytest.raises(DependencyCycleError, match="A, B"):
        plan.ordered()


def test_unknown_dependency():
    plan = ResourcePlan()
    plan.add("A", "X", depends_on=["Missing"])
    with pytest.raises(DependencyCycleError, match="unknown resource Missing"):
        plan.ordered()


def test_duplicate_logical_id():
    plan = ResourcePlan()
    plan.add("A", "X")
    with pytest.raises(TopologyError, match="Duplicate"):
        plan.add("A", "Y")


def test_repeated_dependencies_collapse():
    plan = ResourcePlan()
    plan.add("A", "X")
    spec = plan.add("B", "X", depends_on=["A", "A"])
    assert spec.depends_on == ("A",)
    assert _ids(plan.ordered()) == ["A", "B"]


def test_lookup_helpers():
    plan = ResourcePlan()
    plan.add("Vpc", "AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})
    plan.add("Subnet1", "AWS::EC2::Subnet", depends_on=["Vpc"])

    assert "Vpc" in plan and "Nope" not in plan
    assert len(plan) == 2
    assert plan.get("Vpc").properties == {"CidrBlock": "10.0.0.0/16"}
    assert _ids(plan.of_type("AWS::EC2::Subnet")) == ["Subnet1"]
    assert plan.get("Subnet1").to_dict() == {
        "logical_id": "Subnet1",
        "type": "AWS::EC2::Subnet",
        "properties": {},
        "depends_on": ["Vpc"],
    }
