"""
AWS Tools

Command-line conveniences for QuickSight backup and restore, EC2 instance
management and AWS authentication switching, built on boto3.
"""

__version__ = "1.0.0"
