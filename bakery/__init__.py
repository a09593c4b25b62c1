"""bakery: turn a tracker work item into an OpenSpec change proposal."""

__version__ = "0.2.0"
