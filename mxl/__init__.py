"""
MxL Telemetry Pipeline
Durable client queue, ingestion boundary, stream processing and retention
for mobile telemetry.
"""

__version__ = "1.4.0"
