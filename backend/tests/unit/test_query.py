"""
Unit Tests: Query translation

Test cases:
- comparisons, string calls and membership compile to MongoDB operators
- AND/OR flatten, constants fold, negation uses $nor
- id aliasing and ObjectId coercion
- unsupported shapes raise QueryTranslationError
- sort specs, field paths, projections and update documents
"""

import re
from decimal import Decimal
from enum import Enum
from uuid import uuid4

import pytest
from bson import Binary, Decimal128, ObjectId

from docrepo import QueryTranslationError, Update, asc, desc, new_query
from docrepo.query import (
    MATCH_NONE,
    Projection,
    compile_filter,
    compile_sort,
    entity_aliases,
    field_path,
)
from docrepo.update import compile_update

ALIASES = {"id": "_id"}


def compile(fn):
    return compile_filter(new_query(fn), ALIASES)


def test_none_and_raw_filters_pass_through():
    assert compile_filter(None) == {}
    raw = {"age": {"$gt": 3}}
    assert compile_filter(raw) == raw


def test_equality_and_ordering():
    assert compile(lambda x: x.company_id == "C1") == {"company_id": "C1"}
    assert compile(lambda x: x.age != 3) == {"age": {"$ne": 3}}
    assert compile(lambda x: x.age < 3) == {"age": {"$lt": 3}}
    assert compile(lambda x: x.age <= 3) == {"age": {"$lte": 3}}
    assert compile(lambda x: x.age > 3) == {"age": {"$gt": 3}}
    assert compile(lambda x: x.age >= 3) == {"age": {"$gte": 3}}


def test_literal_on_the_left_is_flipped():
    assert compile(lambda x: 3 < x.age) == {"age": {"$gt": 3}}
    assert compile(lambda x: "C1" == x.company_id) == {"company_id": "C1"}


def test_nested_members_become_dotted_paths():
    assert compile(lambda x: x.address.city == "Oslo") == {"address.city": "Oslo"}
    assert compile(lambda x: x["office"] == "HQ") == {"office": "HQ"}


def test_id_alias_and_object_id_coercion():
    oid = ObjectId()
    assert compile(lambda x: x.id == str(oid)) == {"_id": oid}
    assert compile(lambda x: x.id.is_in([str(oid)])) == {"_id": {"$in": [oid]}}


def test_boolean_field_and_negation():
    assert compile(lambda x: x.is_active) == {"is_active": True}
    assert compile(lambda x: ~(x.age > 3)) == {"$nor": [{"age": {"$gt": 3}}]}


def test_and_or_flatten():
    query = compile(lambda x: (x.a == 1) & (x.b == 2) & (x.c == 3))
    assert query == {"$and": [{"a": 1}, {"b": 2}, {"c": 3}]}

    query = compile(lambda x: (x.a == 1) | ((x.b == 2) | (x.c == 3)))
    assert query == {"$or": [{"a": 1}, {"b": 2}, {"c": 3}]}


def test_combined_predicates_compile_to_one_filter():
    predicate = new_query(lambda x: x.company_id == "C1").and_(lambda x: x.agent_id == "A1")
    predicate = predicate.or_(lambda x: x.age == 21)

    assert compile_filter(predicate) == {
        "$or": [
            {"$and": [{"company_id": "C1"}, {"agent_id": "A1"}]},
            {"age": 21},
        ]
    }


def test_constants_fold():
    assert compile_filter(new_query(True)) == {}
    assert compile_filter(new_query(False)) == MATCH_NONE
    assert compile_filter(new_query(True).and_(lambda x: x.a == 1)) == {"a": 1}
    assert compile_filter(new_query(False).and_(lambda x: x.a == 1)) == MATCH_NONE
    assert compile_filter(new_query(False).or_(lambda x: x.a == 1)) == {"a": 1}
    assert compile_filter(new_query(True).or_(lambda x: x.a == 1)) == {}
    assert compile_filter(~new_query(True)) == MATCH_NONE


def test_string_calls_become_escaped_regexes():
    assert compile(lambda x: x.name.contains("a.b")) == {"name": {"$regex": re.escape("a.b")}}
    assert compile(lambda x: x.name.startswith("Us")) == {"name": {"$regex": "^Us"}}
    assert compile(lambda x: x.name.endswith("10")) == {"name": {"$regex": "10$"}}
    assert compile(lambda x: x.email.lower().contains("10")) == {
        "email": {"$regex": "10", "$options": "i"}
    }


def test_lowered_comparisons():
    assert compile(lambda x: x.name.lower() == "bob") == {
        "name": {"$regex": "^bob$", "$options": "i"}
    }
    assert compile(lambda x: x.name.lower() != "bob") == {
        "$nor": [{"name": {"$regex": "^bob$", "$options": "i"}}]
    }
    # a lowered value never equals or contains upper-case text
    assert compile(lambda x: x.name.lower() == "Bob") == MATCH_NONE
    assert compile(lambda x: x.name.lower().contains("B")) == MATCH_NONE


def test_null_checks():
    assert compile(lambda x: (x.email != None) & x.email.contains("a")) == {  # noqa: E711
        "$and": [{"email": {"$ne": None}}, {"email": {"$regex": "a"}}]
    }


@pytest.mark.parametrize(
    "fn",
    [
        lambda x: x.age == x.other,
        lambda x: x.name.lower() > "a",
        lambda x: x,
        lambda x: 3,
        lambda x: x.name.contains(5),
    ],
)
def test_unsupported_shapes_raise(fn):
    with pytest.raises(QueryTranslationError):
        compile(fn)


def test_entity_aliases(Customer):
    assert entity_aliases(Customer) == {"id": "_id"}
    assert entity_aliases(dict) == {}


def test_field_path_and_sort():
    assert field_path(lambda x: x.id, ALIASES) == "_id"
    assert field_path("id.part", ALIASES) == "_id.part"
    assert field_path(lambda x: x.address.city) == "address.city"
    with pytest.raises(QueryTranslationError):
        field_path(lambda x: x.age > 3)

    assert compile_sort(None) is None
    assert compile_sort(asc(lambda x: x.age)) == [("age", 1)]
    assert compile_sort(desc("created_date")) == [("created_date", -1)]


def test_projection_fields_and_shaping():
    projection = Projection(lambda x: (x.name, x.id), ALIASES)
    assert projection.fields == {"name": 1, "_id": 1}
    oid = ObjectId()
    assert projection.apply({"name": "Ann", "_id": oid}) == ("Ann", oid)

    projection = Projection(lambda x: {"who": x.name.upper(), "city": x.address.city})
    assert projection.fields == {"name": 1, "address.city": 1, "_id": 0}
    assert projection.apply({"name": "ann", "address": {"city": "Oslo"}}) == {
        "who": "ANN",
        "city": "Oslo",
    }

    whole = Projection(lambda x: x)
    assert whole.fields is None
    assert whole.apply({"a": 1}) == {"a": 1}


def test_update_builder_is_immutable_and_compiles():
    base = Update().set(lambda x: x.is_active, False)
    extended = base.inc("age", 2).unset(lambda x: x.phone)

    assert len(base) == 1
    assert compile_update(base) == {"$set": {"is_active": False}}
    assert compile_update(extended) == {
        "$set": {"is_active": False},
        "$inc": {"age": 2},
        "$unset": {"phone": ""},
    }
    assert compile_update(lambda u: u.max("age", 90).push("tags", "x")) == {
        "$max": {"age": 90},
        "$push": {"tags": "x"},
    }
    assert compile_update({"$set": {"a": 1}}) == {"$set": {"a": 1}}

    with pytest.raises(ValueError):
        compile_update(Update())


def test_has_compiles_to_element_equality():
    assert compile(lambda x: x.tags.has("a")) == {"tags": "a"}
    assert compile(lambda x: x.tags.has({"k": 1})) == {"tags": {"$eq": {"k": 1}}}


def test_compiled_filters_are_independent_copies():
    match_all = compile_filter(new_query(True))
    match_all["tampered"] = 1
    match_none = compile_filter(new_query(False))
    match_none["_id"]["$in"].append("tampered")

    assert compile_filter(new_query(True)) == {}
    assert compile_filter(new_query(False)) == {"_id": {"$in": []}}
    assert MATCH_NONE == {"_id": {"$in": []}}


def test_rich_values_are_encoded_for_the_store():
    class Color(Enum):
        RED = "red"

    token = uuid4()

    assert compile(lambda x: x.color == Color.RED) == {"color": "red"}
    assert compile(lambda x: x.price > Decimal("1.5")) == {"price": {"$gt": Decimal128("1.5")}}
    assert compile(lambda x: x.token == token) == {"token": Binary.from_uuid(token)}
    assert compile_update(Update().set("color", Color.RED)) == {"$set": {"color": "red"}}
