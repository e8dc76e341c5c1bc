"""Host-side network, disk, image and DNS checks for a bare-metal installation agent."""

__version__ = "0.1.0"