from compliance_monitor.reporting.reporter import (
    AnalyticsProvider,
    ComplianceReport,
    ComplianceReporter,
)

__all__ = ["AnalyticsProvider", "ComplianceReport", "ComplianceReporter"]
