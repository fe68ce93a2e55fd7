"""termport — supervise a terminal-rendering helper and talk to it over a line protocol."""

__version__ = "0.3.0"
