"""Mirror a website into a self-contained offline directory."""

__version__ = "0.1.0"
