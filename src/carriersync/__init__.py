"""carriersync: resumable, checkpointed carrier device inventory sync."""

__version__ = "0.1.0"
