"""matrixci - build-matrix orchestrator.

Runs an ordered list of opaque command steps across the cross product of
declared environment axes and reports pass/fail per environment.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
