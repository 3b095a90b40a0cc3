"""
Process Network — Reference Network
=====================================
Populates a NetworkGraph with a small CO2 capture and transport network,
used by the CLI demo and as a fixture:

  Teesside Cluster (group)
    ├── branch-1  Cement works        Emitter → CaptureUnit → Compressor x2
    └── branch-2  Steel works         Emitter → CaptureUnit → Compressor
  Offshore Hub (group, nested in the cluster)
    └── branch-3  Trunk line          Pipe → Compressor x2 → Pipe x3
  branch-4        Storage             Pipe → Injection → Storage

  branch-1 ─┐
            ├─→ branch-3 ─→ branch-4
  branch-2 ─┘

plus a geographic anchor and a site-plan image as backgrounds, and global
defaults in the config record.
"""

from __future__ import annotations
from loguru import logger

from scope_resolution.registry import InMemorySchemaRegistry
from .graph import NetworkGraph
from .ontology import (
    Block, BranchData, GeographicData, GroupData, ImageData, Node, NodeKind, Position,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  BLOCK TYPE SCHEMA (v1.0 costing)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

REFERENCE_SCHEMA = {
    "version": "v1.0-costing",
    "blocks": {
        "Emitter": {
            "emitter_type": {"kind": "enum", "required": True, "title": "Emitter type",
                             "enumValues": ["cement", "steel", "refinery", "power"]},
            "capture_rate": {"kind": "number", "required": True, "dimension": "mass_flow_rate",
                             "defaultUnit": "Mt/y", "title": "CO2 captured"},
        },
        "CaptureUnit": {
            "capture_technology": {"kind": "enum", "required": True,
                                   "enumValues": ["amine", "oxyfuel", "membrane"]},
            "capture_rate": {"kind": "number", "required": True, "dimension": "mass_flow_rate",
                             "defaultUnit": "Mt/y"},
            "electrical_power": {"kind": "number", "dimension": "power", "defaultUnit": "MW"},
        },
        "Compressor": {
            "pressure_range": {"kind": "enum", "required": True, "title": "Pressure range",
                               "description": "LP (1-40 bar), HP (40-120 bar), or Booster",
                               "enumValues": ["lp", "hp", "booster"]},
            "drive_type": {"kind": "enum", "enumValues": ["electric", "gas"]},
            "pressure": {"kind": "number", "dimension": "pressure", "defaultUnit": "bar"},
            "electrical_power": {"kind": "number", "required": True, "dimension": "power",
                                 "defaultUnit": "MW"},
        },
        "Pipe": {
            "phase": {"kind": "enum", "required": True, "enumValues": ["gas", "dense"]},
            "location": {"kind": "enum", "required": True, "enumValues": ["onshore", "offshore"]},
            "size": {"kind": "enum", "required": True, "enumValues": ["small", "medium", "large"]},
            "length": {"kind": "number", "required": True, "dimension": "length",
                       "defaultUnit": "km", "title": "Pipeline length", "min": 0},
            "crossings_frequency": {"kind": "number", "title": "Crossing frequency",
                                    "description": "Number of crossings per 10km", "min": 0},
        },
        "Injection": {
            "location": {"kind": "enum", "required": True, "enumValues": ["onshore", "offshore"]},
            "pressure": {"kind": "number", "dimension": "pressure", "defaultUnit": "bar"},
        },
        "Storage": {
            "location": {"kind": "enum", "required": True, "enumValues": ["onshore", "offshore"]},
            "storage_type": {"kind": "enum", "enumValues": ["saline_aquifer", "depleted_field"]},
        },
    },
}


def reference_registry() -> InMemorySchemaRegistry:
    return InMemorySchemaRegistry.from_dict(REFERENCE_SCHEMA)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  REFERENCE NETWORK
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class ReferenceNetworkBuilder:
    """Populates a NetworkGraph with the reference CO2 network."""

    def __init__(self, graph: NetworkGraph):
        self.graph = graph

    def build_reference_network(self) -> NetworkGraph:
        """Build the whole reference network in one batch."""
        logger.info("Building reference CO2 transport network...")
        with self.graph.store.batch():
            self._build_background()
            self._build_groups()
            self._build_branches()
            self._build_connections()
            self._build_defaults()

        stats = self.graph.stats()
        logger.info(f"Reference network built: {stats['branches']} branches, "
                    f"{stats['blocks']} blocks, {stats['edges']} edges")
        return self.graph

    # ── Backgrounds ─────────────────────────────────

    def _build_background(self):
        self.graph.add_node(Node(
            id="geo-anchor-1", kind=NodeKind.GEOGRAPHIC_ANCHOR, position=Position(-400, -300),
            data=GeographicData("Teesside", {"latitude": 54.61, "longitude": -1.18}),
        ))
        self.graph.add_node(Node(
            id="image-1", kind=NodeKind.IMAGE, position=Position(-380, -280),
            data=ImageData("assets/site-plan.png", "Site plan"), width=1200, height=800,
        ))

    # ── Groups ──────────────────────────────────────

    def _build_groups(self):
        self.graph.add_node(Node(
            id="group-1", kind=NodeKind.GROUP, position=Position(0, 0), width=900, height=500,
            data=GroupData("Teesside Cluster", {"location": "onshore", "phase": "gas"}),
        ))
        self.graph.add_node(Node(
            id="group-2", kind=NodeKind.GROUP, position=Position(450, 40), width=400, height=200,
            parent_id="group-1",
            data=GroupData("Offshore Hub", {"location": "offshore", "size": "large"}),
        ))

    # ── Branches ────────────────────────────────────

    def _build_branches(self):
        branches = [
            Node(id="branch-1", kind=NodeKind.BRANCH, position=Position(40, 60), parent_id="group-1",
                 data=BranchData("Cement works", [
                     Block("Emitter", 1, {"emitter_type": "cement", "capture_rate": "1.2 Mt/y"}),
                     Block("CaptureUnit", 1, {"capture_technology": "amine", "electrical_power": "25 MW"}),
                     Block("Compressor", 2, {"pressure_range": "lp", "pressure": "35 bar",
                                             "electrical_power": "8 MW"}),
                 ], {"capture_rate": "1.2 Mt/y"})),
            Node(id="branch-2", kind=NodeKind.BRANCH, position=Position(40, 260), parent_id="group-1",
                 data=BranchData("Steel works", [
                     Block("Emitter", 1, {"emitter_type": "steel", "capture_rate": "0.8 Mt/y"}),
                     Block("CaptureUnit", 1, {"capture_technology": "amine", "capture_rate": "0.8 Mt/y"}),
                     Block("Compressor", 1, {"pressure_range": "hp", "pressure": "110 bar",
                                             "drive_type": "electric", "electrical_power": "12 MW"}),
                 ])),
            Node(id="branch-3", kind=NodeKind.BRANCH, position=Position(20, 60), parent_id="group-2",
                 data=BranchData("Trunk line", [
                     Block("Pipe", 1, {"length": "45 km", "size": "large"}),
                     Block("Compressor", 2, {"pressure_range": "booster", "electrical_power": "6 MW"}),
                     Block("Pipe", 3, {"length": "5 km", "size": "medium", "crossings_frequency": 2}),
                 ], {"phase": "dense"})),
            Node(id="branch-4", kind=NodeKind.BRANCH, position=Position(1000, 120),
                 data=BranchData("Storage", [
                     Block("Pipe", 1, {"length": "120 km", "location": "offshore", "size": "large"}),
                     Block("Injection", 1, {"location": "offshore", "pressure": "150 bar"}),
                     Block("Storage", 1, {"location": "offshore", "storage_type": "saline_aquifer"}),
                 ])),
        ]
        for branch in branches:
            self.graph.add_node(branch)

    # ── Connections ─────────────────────────────────

    def _build_connections(self):
        self.graph.connect("branch-1", "branch-3")
        self.graph.connect("branch-2", "branch-3")
        self.graph.connect("branch-3", "branch-4")

    # ── Global defaults ─────────────────────────────

    def _build_defaults(self):
        for name, value in {"phase": "dense", "ambient_temperature": "15 C", "currency": "GBP"}.items():
            self.graph.set_default(name, value)
