"""Validation rules of the extracted-geometry models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from conftest import triangle_figure
from geotikz.figure_schema import Annotation, BoundingBox, Edge, GeometricFigure, Vertex
from geotikz.response_schema import EXTRACTION_RESPONSE_FORMAT, ExtractionResponse


def test_edge_accepts_wire_alias_and_serializes_it_back():
    edge = Edge.model_validate({"from": "A", "to": "B"})
    assert edge.from_ == "A"
    assert edge.style == "solid"
    assert edge.model_dump(by_alias=True) == {"from": "A", "to": "B", "style": "solid"}


def test_unknown_edge_style_is_rejected():
    with pytest.raises(ValidationError):
        Edge.model_validate({"from": "A", "to": "B", "style": "dotted"})


def test_annotation_kinds():
    note = Annotation.model_validate({"label": "AB = AC", "kind": "relationship", "locationHint": "sides AB and AC"})
    assert note.location_hint == "sides AB and AC"
    with pytest.raises(ValidationError):
        Annotation.model_validate({"label": "x", "kind": "arrow", "locationHint": "top"})


def test_duplicate_vertex_labels_are_rejected():
    with pytest.raises(ValidationError, match="duplicate vertex label 'A'"):
        GeometricFigure(vertices=(Vertex(label="A", x=0, y=0), Vertex(label="A", x=5, y=5)))


def test_edges_must_reference_known_vertices():
    with pytest.raises(ValidationError, match="unknown vertex 'D'"):
        GeometricFigure(
            vertices=(Vertex(label="A", x=0, y=0),),
            edges=(Edge(**{"from": "A", "to": "D"}),),
        )


def test_empty_vertex_label_is_rejected():
    with pytest.raises(ValidationError):
        Vertex(label="", x=0, y=0)


def test_figure_is_immutable_and_searchable():
    figure = triangle_figure()
    assert figure.vertex("C").position == (100, 60)
    with pytest.raises(KeyError):
        figure.vertex("Z")
    with pytest.raises(ValidationError):
        figure.vertices = ()


def test_bounding_box_edges():
    box = BoundingBox(x=5, y=7, width=10, height=20)
    assert (box.right, box.bottom) == (15, 27)


def test_extraction_response_allows_not_found_without_payload():
    parsed = ExtractionResponse.model_validate_json('{"figureFound": false}')
    assert parsed.figure_found is False
    assert parsed.geometry is None and parsed.bounding_box is None


def test_extraction_format_advertises_wire_names():
    schema = EXTRACTION_RESPONSE_FORMAT["json_schema"]["schema"]
    assert {"figureFound", "boundingBox", "geometry", "confidence"} <= set(schema["properties"])
    assert schema["required"] == ["figureFound"]
