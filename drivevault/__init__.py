"""DriveVault - encrypted personal file storage on Google Drive."""

__version__ = "1.0.0"
