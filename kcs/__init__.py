"""Order intake and print pipeline for personalised children's books."""

__version__ = "0.1.0"
