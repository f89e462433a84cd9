from wgc.runtime.simulator import GraphSimulator, SimulationReport
from wgc.runtime.telemetry import TelemetryCollector

__all__ = [
    "GraphSimulator",
    "SimulationReport",
    "TelemetryCollector",
]
