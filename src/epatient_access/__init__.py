"""epatient-access: emergency access authorization for shared patient records."""

__version__ = "0.1.0"
