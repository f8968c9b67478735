"""
Batch HEIC conversion pipeline: per-file conversion workers fan in on a
DynamoDB request record, and the last one to finish hands the batch to the
archival worker.
"""

__version__ = '1.0.0'
