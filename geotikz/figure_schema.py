from typing import Tuple, Literal
from pydantic import BaseModel, Field, ConfigDict, model_validator

# Coordinates are pixels of the normalized image: origin top-left, y grows downward.
Coord = float

EdgeStyle = Literal['solid', 'dashed']
AnnotationKind = Literal['angle', 'side-label', 'relationship']


class Vertex(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)
    label: str = Field(min_length=1)
    x: Coord
    y: Coord

    @property
    def position(self) -> Tuple[Coord, Coord]:
        return (self.x, self.y)


class Edge(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True, populate_by_name=True)
    from_: str = Field(alias='from')
    to: str
    style: EdgeStyle = 'solid'


class Annotation(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True, populate_by_name=True)
    label: str
    kind: AnnotationKind
    location_hint: str = Field(alias='locationHint')


class GeometricFigure(BaseModel):
    """Vertices, edges and annotations of one extracted diagram.

    Frozen: the generator and corrector only ever read it.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)
    vertices: Tuple[Vertex, ...] = ()
    edges: Tuple[Edge, ...] = ()
    annotations: Tuple[Annotation, ...] = ()

    @model_validator(mode='after')
    def _check_references(self) -> 'GeometricFigure':
        labels = [v.label for v in self.vertices]
        seen = set()
        for label in labels:
            if label in seen:
                raise ValueError(f"duplicate vertex label '{label}'")
            seen.add(label)
        for edge in self.edges:
            for endpoint in (edge.from_, edge.to):
                if endpoint not in seen:
                    raise ValueError(
                        f"edge {edge.from_}-{edge.to} references unknown vertex '{endpoint}'"
                    )
        return self

    def vertex(self, label: str) -> Vertex:
        for v in self.vertices:
            if v.label == label:
                return v
        raise KeyError(label)


class BoundingBox(BaseModel):
    # raw boxes from the perception service may stick out of the image;
    # validate_bounding_box() is what guarantees containment
    model_config = ConfigDict(extra='forbid', frozen=True)
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height
