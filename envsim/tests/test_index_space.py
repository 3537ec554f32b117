"""
Tests for index sets and the index space
"""

import pytest
from envsim.exceptions import (
    ModelBuildError,
    NameCollisionError,
    SignatureMismatchError,
    UnknownSymbolError,
)
from envsim.index_space import IndexSpace, project


def make_space():
    space = IndexSpace()
    space.add("Compartment", ["A", "B"])
    space.add("Layer", [1, 2, 3])
    return space


def test_instances_follow_member_order():
    """Test that instances enumerate the product in canonical order"""
    space = make_space()

    instances = space.instances(("Compartment", "Layer"))

    assert instances == [
        ("A", 1), ("A", 2), ("A", 3),
        ("B", 1), ("B", 2), ("B", 3),
    ]
    assert space.count(("Compartment", "Layer")) == 6
    assert space.offsets(("Compartment", "Layer"))[("B", 2)] == 4


def test_scalar_signature_has_one_instance():
    """Test that the empty signature spans exactly one instance"""
    space = make_space()

    assert space.instances(()) == [()]
    assert space.count(()) == 1


def test_canonical_orders_by_registration():
    """Test that signatures are reordered into registration order"""
    space = make_space()

    assert space.canonical(["Layer", "Compartment"]) == ("Compartment", "Layer")
    assert space.union(("Layer",), ("Compartment",), ("Layer",)) == ("Compartment", "Layer")


def test_canonical_rejects_repeated_set():
    """Test that a signature may not list a set twice"""
    space = make_space()

    with pytest.raises(SignatureMismatchError):
        space.canonical(["Compartment", "Compartment"], owner="X")


def test_unknown_index_set():
    """Test lookup of an index set that was never registered"""
    space = make_space()

    with pytest.raises(UnknownSymbolError) as exc_info:
        space.canonical(["Reach"])

    assert exc_info.value.name == "Reach"


def test_duplicate_set_and_member_names():
    """Test that set names and members within a set are unique"""
    space = make_space()

    with pytest.raises(NameCollisionError):
        space.add("Compartment", ["C"])

    with pytest.raises(NameCollisionError):
        space.add("Soil", ["sand", "clay", "sand"])


def test_invalid_member_type():
    """Test that members must be strings or integers"""
    space = IndexSpace()

    with pytest.raises(ModelBuildError) as exc_info:
        space.add("Flags", [True, False])

    assert exc_info.value.code == "invalid_member"


def test_sub_indexed_set_instances():
    """Test that a nested set contributes the members of the bound parent member"""
    space = IndexSpace()
    space.add("Catchment", ["C1", "C2"])
    space.add("Reach", {"C1": ["r1", "r2"], "C2": ["r3"]}, parent="Catchment")

    assert space.instances(("Catchment", "Reach")) == [
        ("C1", "r1"),
        ("C1", "r2"),
        ("C2", "r3"),
    ]
    assert space.members("Reach", {"Catchment": "C2"}) == ("r3",)
    assert space.members("Reach") == ("r1", "r2", "r3")
    assert space.get("Reach").count("C1") == 2


def test_sub_indexed_set_requires_parent_in_signature():
    """Test that a nested set cannot appear without its parent"""
    space = IndexSpace()
    space.add("Catchment", ["C1", "C2"])
    space.add("Reach", {"C1": ["r1"], "C2": ["r2"]}, parent="Catchment")

    with pytest.raises(SignatureMismatchError) as exc_info:
        space.canonical(["Reach"], owner="Flow")

    assert exc_info.value.details["parent"] == "Catchment"


def test_sub_indexed_set_unknown_parent_member():
    """Test that per-parent members must be keyed by real parent members"""
    space = IndexSpace()
    space.add("Catchment", ["C1"])

    with pytest.raises(ModelBuildError) as exc_info:
        space.add("Reach", {"C9": ["r1"]}, parent="Catchment")

    assert exc_info.value.code == "invalid_index_set"


def test_project_broadcasts_and_pins():
    """Test projection of a reader's members onto a smaller signature"""
    bound = {"Compartment": "B", "Layer": 2}

    assert project(bound, ("Compartment",)) == ("B",)
    assert project(bound, ()) == ()
    assert project(bound, ("Compartment", "Layer"), {"Layer": 3}) == ("B", 3)

    with pytest.raises(KeyError):
        project({"Layer": 1}, ("Compartment",))
