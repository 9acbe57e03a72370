"""Stage representation for pipeline execution."""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class Stage:
    """A single analysis stage with its dependencies.

    Attributes
    ----------
    name : str
        Human-readable stage name (e.g., "Cell QC")
    stage_id : str
        Short identifier (e.g., "A", "B", "K")
    depends_on : List[str]
        Stage IDs that must run before this stage
    optional : bool
        Whether this stage may be disabled; stages depending on a disabled
        optional stage only use it for ordering
    per_sample : bool
        Whether the stage runs on each sample independently (False for the
        fan-in integration stage)

    Example
    -------
    >>> stage = Stage(name="Cell QC", stage_id="B", depends_on=["A"])
    >>> stage.to_dict()["depends_on"]
    ['A']
    """

    name: str
    stage_id: str
    depends_on: List[str] = field(default_factory=list)
    optional: bool = False
    per_sample: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage to dictionary for serialization."""
        return {
            "name": self.name,
            "stage_id": self.stage_id,
            "depends_on": list(self.depends_on),
            "optional": self.optional,
            "per_sample": self.per_sample,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], stage_id: str) -> "Stage":
        """Create Stage from dictionary."""
        return cls(
            name=data.get("name", stage_id),
            stage_id=stage_id,
            depends_on=data.get("depends_on", []),
            optional=data.get("optional", False),
            per_sample=data.get("per_sample", True),
        )


STAGES: Dict[str, Stage] = {
    "A": Stage("Empty-droplet filtering", "A"),
    "B": Stage("Cell QC", "B", depends_on=["A"]),
    "C": Stage("Normalization", "C", depends_on=["B"]),
    "D": Stage("Variance stabilization", "D", depends_on=["C"], optional=True),
    "E": Stage("Dimensionality reduction", "E", depends_on=["C", "D"]),
    "F": Stage("Dimension selection", "F", depends_on=["E"]),
    "G": Stage("Graph clustering", "G", depends_on=["F"]),
    "H": Stage("UMAP embedding", "H", depends_on=["F"], optional=True),
    "I": Stage("Doublet detection", "I", depends_on=["F"], optional=True),
    "J": Stage("Marker detection", "J", depends_on=["G"], optional=True),
    "K": Stage("Integration", "K", per_sample=False, optional=True),
}

# Stages re-run on the merged object after integration
POST_INTEGRATION_STAGES = ["E", "F", "G", "H", "I", "J"]
