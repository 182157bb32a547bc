"""Rich terminal rendering for stage trees and run history."""

from cdflow.cli_ui.graph_renderer import RunTableRenderer, StageTreeRenderer

__all__ = ["RunTableRenderer", "StageTreeRenderer"]
