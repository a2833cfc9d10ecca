"""flat-catalog-sync: reconcile file servers into a flat media catalog."""

__version__ = "0.1.0"
