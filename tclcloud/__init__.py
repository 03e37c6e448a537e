"""tclcloud: ThreatCL Cloud command-line client."""

__version__ = "0.3.0"
