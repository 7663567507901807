"""
Install - Version-keyed directory of patch binaries.
"""

from hotpatch.install.manager import InstallManager

__all__ = ["InstallManager"]
