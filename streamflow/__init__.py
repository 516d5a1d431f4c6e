"""StreamFlow: scheduling and supervision of outbound media relay jobs."""

__version__ = "2.1.0"
