import os
import json
import datetime


def save_report(job, base_dir="reports"):
    """
    Save the final job report under a per-month folder and return its path.
    """
    now = datetime.datetime.now()
    month_folder = now.strftime("%Y-%m")
    report_folder = os.path.join(base_dir, job.project_type, month_folder)
    os.makedirs(report_folder, exist_ok=True)

    report_filename = os.path.join(report_folder, f"report_{job.job_id}.json")
    with open(report_filename, "w") as f:
        json.dump(job.model_dump(mode="json", exclude={"logs"}), f, indent=4)

    return report_filename


def calculate_alert_stats(alerts):
    """
    Count alerts by severity (low, medium, high, critical).
    """
    severity_counts = {"low": 0, "medium": 0, "high": 0, "critical": 0}

    for alert in alerts:
        severity = (alert.severity or "").lower()
        if severity in severity_counts:
            severity_counts[severity] += 1

    return {
        "severity_counts": severity_counts,
        "total_alerts": sum(severity_counts.values())
    }
