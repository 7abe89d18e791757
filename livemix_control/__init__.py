"""Control-node management of video sources, recording sessions and segments."""

__version__ = "0.1.0"