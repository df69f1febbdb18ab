"""pitchroute: adaptive pitch and source-type detection for short audio frames."""

__version__ = "0.1.0"
