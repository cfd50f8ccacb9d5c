"""MQL analytics -- lead reconciliation, monthly snapshots, and reporting.

Provides the Pipedrive and SendPulse lead collectors, the marketing expense
aggregator, MqlSyncService (builds and persists monthly snapshots),
MqlReportService (reads them back), and the repeat-deal backfill.
"""
