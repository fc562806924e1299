"""
DriveVault test suite
"""
