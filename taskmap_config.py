# This file holds the global configuration for the Taskmap engine.
import os
from dataclasses import dataclass
from pathlib import Path

# --- NODE GEOMETRY ---
# Every node on the canvas is drawn with the same fixed footprint. The layout
# engine, the overlap resolver and the connection resolver all rely on it.
NODE_WIDTH = 112
NODE_HEIGHT = 56

# Distance between a source node and a node spawned from one of its anchors.
HORIZONTAL_OFFSET = NODE_WIDTH * 1.5
VERTICAL_OFFSET = NODE_HEIGHT * 2

# --- LAYOUT CONFIGURATION ---
DIRECTION_LR = "LR"
DIRECTION_RL = "RL"
DIRECTION_TB = "TB"
DIRECTION_BT = "BT"
LAYOUT_DIRECTIONS = (DIRECTION_LR, DIRECTION_RL, DIRECTION_TB, DIRECTION_BT)

DEFAULT_DIRECTION = DIRECTION_LR
DEFAULT_NODE_SPACING = 100
DEFAULT_RANK_SPACING = 150
LAYOUT_MARGIN = 50
OVERLAP_ITERATIONS = 3

# --- HISTORY CONFIGURATION ---
MAX_HISTORY_LENGTH = 50
# Captures closer together than this (seconds) are dropped outright.
HISTORY_DEBOUNCE = 0.1
# Same-shape captures closer than this to the last accepted action are coalesced.
HISTORY_COALESCE_WINDOW = 0.5

# --- DEFAULT LABELS ---
DEFAULT_NODE_TITLE = "New task"
DEFAULT_THEME_TITLE = "New theme"
DEFAULT_CANVAS_NAME = "Untitled canvas"
DEFAULT_DOCUMENT_TITLE = "Mind Map"


@dataclass(frozen=True)
class LayoutConfig:
    """Direction and spacing consumed by the layout engine."""
    direction: str = DEFAULT_DIRECTION
    node_spacing: float = DEFAULT_NODE_SPACING
    rank_spacing: float = DEFAULT_RANK_SPACING

    def __post_init__(self):
        if self.direction not in LAYOUT_DIRECTIONS:
            raise ValueError(
                f"Unknown layout direction '{self.direction}'. Expected one of {', '.join(LAYOUT_DIRECTIONS)}."
            )
        if self.node_spacing < 0 or self.rank_spacing < 0:
            raise ValueError("Layout spacing must not be negative.")

    @property
    def is_horizontal(self) -> bool:
        return self.direction in (DIRECTION_LR, DIRECTION_RL)


def load_layout_config() -> LayoutConfig:
    """
    Builds a LayoutConfig from the environment, falling back to the defaults.

    Recognised variables are TASKMAP_LAYOUT_DIRECTION, TASKMAP_NODE_SPACING and
    TASKMAP_RANK_SPACING.

    Returns:
        LayoutConfig: The resolved layout configuration.

    Raises:
        ValueError: If a variable is set to an unusable value.
    """
    direction = os.getenv('TASKMAP_LAYOUT_DIRECTION', DEFAULT_DIRECTION).upper()
    node_spacing = float(os.getenv('TASKMAP_NODE_SPACING', DEFAULT_NODE_SPACING))
    rank_spacing = float(os.getenv('TASKMAP_RANK_SPACING', DEFAULT_RANK_SPACING))
    return LayoutConfig(direction=direction, node_spacing=node_spacing, rank_spacing=rank_spacing)


def get_data_dir() -> Path:
    """
    Returns the directory holding the canvas library database.

    Honours TASKMAP_HOME when set, otherwise uses ~/.taskmap.
    """
    override = os.getenv('TASKMAP_HOME')
    if override:
        return Path(override).expanduser()
    return Path.home() / '.taskmap'
