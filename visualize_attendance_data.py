#!/usr/bin/env python3
"""
Attendance Dashboard Charts
=========================================================
Renders the dashboard figures from an exported attendance analytics run.

Usage:
    python attendance_analytics.py --output all
    python visualize_attendance_data.py
    python visualize_attendance_data.py --data-dir ./custom_data
    python visualize_attendance_data.py --output-dir ./charts
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")  # headless rendering
import matplotlib.pyplot as plt
import matplotlib.ticker as mticker
import pandas as pd
from matplotlib.gridspec import GridSpec
from matplotlib.patches import Patch


# ── Theme ─────────────────────────────────────────────────────────────────

THEME_COLORS = {
    "primary": "#1B3A5C",      # dark navy
    "secondary": "#2E86AB",    # bright blue
    "accent": "#F18F01",       # orange
    "success": "#2CA58D",      # teal/green
    "danger": "#C1292E",       # red
    "warning": "#F4D35E",      # yellow
    "light": "#E8EEF2",        # light gray-blue
    "text": "#2C3E50",         # dark text
}

STATUS_COLORS = {
    "present": THEME_COLORS["success"],
    "late": THEME_COLORS["warning"],
    "excused": THEME_COLORS["secondary"],
    "absent": THEME_COLORS["danger"],
}

SEVERITY_COLORS = {
    "critical": THEME_COLORS["danger"],
    "warning": THEME_COLORS["accent"],
    "info": THEME_COLORS["secondary"],
}

TREND_COLORS = {
    "up": THEME_COLORS["success"],
    "stable": THEME_COLORS["secondary"],
    "down": THEME_COLORS["danger"],
}

SOURCE_COLORS = [
    THEME_COLORS["primary"],
    THEME_COLORS["secondary"],
    THEME_COLORS["accent"],
    THEME_COLORS["success"],
]

# Alert ladder cut-offs drawn as reference lines
RATE_BANDS = [
    (50, "Exam ineligible (<50%)", THEME_COLORS["danger"]),
    (60, "Failing (<60%)", THEME_COLORS["accent"]),
    (70, "Eligibility cutoff (70%)", THEME_COLORS["primary"]),
]


def apply_theme():
    """Apply theme styling to matplotlib."""
    plt.rcParams.update({
        "font.family": "sans-serif",
        "font.sans-serif": ["Helvetica Neue", "Arial", "DejaVu Sans"],
        "font.size": 11,
        "axes.titlesize": 14,
        "axes.titleweight": "bold",
        "axes.labelsize": 12,
        "axes.facecolor": "#FAFBFC",
        "axes.edgecolor": "#DEE2E6",
        "axes.grid": True,
        "grid.alpha": 0.3,
        "grid.color": "#CED4DA",
        "figure.facecolor": "white",
        "figure.dpi": 150,
        "savefig.dpi": 200,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.3,
    })


def daily_frame(summary: dict) -> pd.DataFrame:
    """Daily status counts as a date-indexed frame (one column per status)."""
    daily = summary.get("daily_breakdown", [])
    if not daily:
        return pd.DataFrame(columns=list(STATUS_COLORS))
    frame = pd.DataFrame(
        [{"date": d["date"], **d["statuses"]} for d in daily],
    ).set_index("date")
    return frame.reindex(columns=list(STATUS_COLORS), fill_value=0)


# ── Chart Builders ────────────────────────────────────────────────────────

def chart_daily_status(summary: dict, output_dir: Path):
    """Stacked status counts per day with the daily present-rate on a second axis."""
    frame = daily_frame(summary)
    if frame.empty:
        return None

    fig, ax1 = plt.subplots(figsize=(13, 6))
    frame.plot(
        kind="bar", stacked=True, ax=ax1,
        color=[STATUS_COLORS[c] for c in frame.columns],
        edgecolor="white", linewidth=0.5, width=0.85,
    )
    ax1.set_xlabel("Date")
    ax1.set_ylabel("Events")
    ax1.set_xticklabels(frame.index, rotation=45, ha="right", fontsize=8)
    ax1.yaxis.set_major_formatter(mticker.FuncFormatter(lambda x, _: f"{int(x):,}"))

    totals = frame.sum(axis=1).clip(lower=1)
    present_pct = frame["present"] / totals * 100

    ax2 = ax1.twinx()
    ax2.plot(
        range(len(frame)), present_pct.values,
        color=THEME_COLORS["primary"], marker="o", linewidth=2,
        markersize=4, label="Present %", zorder=5,
    )
    ax2.set_ylabel("Present %", color=THEME_COLORS["primary"])
    ax2.set_ylim(0, 100)
    ax2.grid(False)

    lines1, labels1 = ax1.get_legend_handles_labels()
    lines2, labels2 = ax2.get_legend_handles_labels()
    ax1.legend(
        lines1 + lines2, labels1 + labels2,
        bbox_to_anchor=(1.08, 1), loc="upper left", framealpha=0.9,
    )

    fig.suptitle(
        "Daily Attendance Outcomes",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "daily_status.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_rate_distribution(student_stats_path: Path, output_dir: Path):
    """Histogram of student attendance rates against the alert ladder bands."""
    if not student_stats_path.exists():
        return None
    df = pd.read_csv(student_stats_path)
    if df.empty:
        return None

    fig, ax = plt.subplots(figsize=(11, 6))
    ax.hist(
        df["attendanceRate"], bins=range(0, 105, 5),
        color=THEME_COLORS["secondary"], edgecolor="white", alpha=0.85,
    )

    for cutoff, label, color in RATE_BANDS:
        ax.axvline(x=cutoff, color=color, linestyle="--", alpha=0.7, label=label)

    at_risk = int(df["atRisk"].sum())
    ax.text(
        0.02, 0.95,
        f"Students: {len(df)}\nAt risk: {at_risk} ({at_risk / len(df) * 100:.1f}%)\n"
        f"Median rate: {df['attendanceRate'].median():.1f}%",
        transform=ax.transAxes, fontsize=10, verticalalignment="top",
        bbox=dict(boxstyle="round,pad=0.5", facecolor=THEME_COLORS["light"], alpha=0.9),
    )

    ax.set_xlabel("Attendance Rate (%)")
    ax.set_ylabel("Students")
    ax.set_xlim(0, 100)
    ax.legend(loc="upper center", framealpha=0.9)

    fig.suptitle(
        "Student Attendance Rate Distribution",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "rate_distribution.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_course_attendance(course_stats_path: Path, output_dir: Path):
    """Horizontal bars of course averages coloured by trend."""
    if not course_stats_path.exists():
        return None
    df = pd.read_csv(course_stats_path)
    df = df[df["sessionsHeld"] > 0].sort_values("averageAttendance")
    if df.empty:
        return None

    labels = [f"{cid} ({n})" for cid, n in zip(df["courseId"], df["totalStudents"])]
    colors = [TREND_COLORS.get(t, "#999") for t in df["trend"]]

    fig, ax = plt.subplots(figsize=(11, max(4, len(df) * 0.45)))
    bars = ax.barh(range(len(df)), df["averageAttendance"], color=colors, edgecolor="white")

    ax.set_yticks(range(len(df)))
    ax.set_yticklabels(labels, fontsize=9)
    ax.set_xlabel("Average Attendance (%)")
    ax.set_xlim(0, 105)
    ax.axvline(x=70, color=THEME_COLORS["primary"], linestyle="--", alpha=0.6)

    for bar, val, risk in zip(bars, df["averageAttendance"], df["atRiskStudents"]):
        ax.text(
            bar.get_width() + 1, bar.get_y() + bar.get_height() / 2,
            f"{val:.0f}%  ({risk} at risk)", va="center", fontsize=8, fontweight="bold",
        )

    legend_handles = [
        Patch(facecolor=TREND_COLORS["up"], label="Trending up"),
        Patch(facecolor=TREND_COLORS["stable"], label="Stable"),
        Patch(facecolor=TREND_COLORS["down"], label="Trending down"),
    ]
    ax.legend(handles=legend_handles, loc="lower right", framealpha=0.9)

    fig.suptitle(
        "Course Attendance",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "course_attendance.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_alert_breakdown(alerts_path: Path, output_dir: Path):
    """Alert counts per ladder rung (kind and severity)."""
    if not alerts_path.exists():
        return None
    with open(alerts_path) as f:
        alerts = json.load(f)
    if not alerts:
        return None

    df = pd.DataFrame(alerts)
    pivot = df.groupby(["kind", "severity"]).size().unstack(fill_value=0)
    pivot = pivot.reindex(columns=[s for s in SEVERITY_COLORS if s in pivot.columns])

    fig, ax = plt.subplots(figsize=(10, 6))
    pivot.plot(
        kind="bar", stacked=True, ax=ax,
        color=[SEVERITY_COLORS[c] for c in pivot.columns],
        edgecolor="white", linewidth=0.5,
    )
    ax.set_xlabel("Alert Kind")
    ax.set_ylabel("Students")
    ax.set_xticklabels(pivot.index, rotation=0)
    ax.legend(title="Severity", loc="upper right", framealpha=0.9)
    ax.yaxis.set_major_formatter(mticker.FuncFormatter(lambda x, _: f"{int(x):,}"))

    fig.suptitle(
        f"Attendance Alerts ({len(df)} students)",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "alert_breakdown.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_source_mix(summary: dict, output_dir: Path):
    """Donut chart of capture sources."""
    counts = pd.Series(summary.get("source_counts", {}))
    counts = counts[counts > 0]
    if counts.empty:
        return None

    fig, ax = plt.subplots(figsize=(9, 9))
    wedges, texts, autotexts = ax.pie(
        counts.values,
        labels=None,
        autopct=lambda pct: f"{pct:.1f}%\n({int(round(pct / 100 * counts.sum()))})",
        colors=SOURCE_COLORS[:len(counts)],
        pctdistance=0.78,
        startangle=90,
        wedgeprops=dict(width=0.45, edgecolor="white", linewidth=2),
    )

    for at in autotexts:
        at.set_fontsize(8)
        at.set_fontweight("bold")
        at.set_color("white")

    ax.legend(
        wedges, counts.index,
        title="Source",
        loc="center left",
        bbox_to_anchor=(0.95, 0.5),
        fontsize=9,
        title_fontsize=10,
    )
    ax.text(0, 0, f"{counts.sum():,}\nEvents", ha="center", va="center",
            fontsize=16, fontweight="bold", color=THEME_COLORS["primary"])

    fig.suptitle(
        "Capture Source Mix",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=0.98,
    )

    path = output_dir / "source_mix.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_dashboard(summary: dict, output_dir: Path):
    """Multi-panel dashboard combining key metrics."""
    frame = daily_frame(summary)

    fig = plt.figure(figsize=(16, 10))
    gs = GridSpec(2, 3, figure=fig, hspace=0.4, wspace=0.35)

    # ── Panel 1: Daily present rate ───────────────────────────────
    ax1 = fig.add_subplot(gs[0, :2])
    if not frame.empty:
        totals = frame.sum(axis=1).clip(lower=1)
        rate = frame["present"] / totals * 100
        ax1.plot(range(len(rate)), rate.values, color=THEME_COLORS["primary"], marker="o", linewidth=2)
        ax1.fill_between(range(len(rate)), rate.values, alpha=0.15, color=THEME_COLORS["secondary"])
        step = max(1, len(rate) // 10)
        ax1.set_xticks(list(range(0, len(rate), step)))
        ax1.set_xticklabels(list(rate.index[::step]), fontsize=7, rotation=30)
    ax1.axhline(y=70, color=THEME_COLORS["danger"], linestyle="--", alpha=0.5)
    ax1.set_ylim(0, 100)
    ax1.set_title("Daily Present Rate")

    # ── Panel 2: Status mix ───────────────────────────────────────
    ax2 = fig.add_subplot(gs[0, 2])
    status = summary.get("status_counts", {})
    ax2.bar(
        list(status), list(status.values()),
        color=[STATUS_COLORS.get(s, "#999") for s in status],
    )
    ax2.set_title("Status Mix")
    ax2.tick_params(axis="x", labelsize=8)

    # ── Panel 3: Student trends ───────────────────────────────────
    ax3 = fig.add_subplot(gs[1, 0])
    trends = summary.get("student_trends", {})
    ax3.bar(
        list(trends), list(trends.values()),
        color=[THEME_COLORS["success"], THEME_COLORS["danger"], THEME_COLORS["secondary"]][:len(trends)],
    )
    ax3.set_title("Student Trends")

    # ── Panel 4: Alerts by severity ───────────────────────────────
    ax4 = fig.add_subplot(gs[1, 1])
    severity = summary.get("alerts_by_severity", {})
    ax4.bar(
        list(severity), list(severity.values()),
        color=[SEVERITY_COLORS.get(s, "#999") for s in severity],
    )
    ax4.set_title("Alerts by Severity")

    # ── Panel 5: Key Metrics Summary ──────────────────────────────
    ax5 = fig.add_subplot(gs[1, 2])
    ax5.axis("off")
    metrics = [
        ("Events", f"{summary['total_events']:,}"),
        ("Students", f"{summary['total_students']:,}"),
        ("Courses", f"{summary['total_courses']}"),
        ("Sessions", f"{summary['sessions_held']:,}"),
        ("Mean Rate", f"{summary['mean_attendance_rate']:.1f}%"),
        ("At Risk", f"{summary['students_at_risk']:,}"),
        ("Alerts", f"{summary['total_alerts']:,}"),
        ("Cameras Online", f"{summary.get('devices_online', 0)}"),
    ]
    for i, (label, value) in enumerate(metrics):
        y = 0.92 - i * 0.115
        ax5.text(0.05, y, label, fontsize=10, fontweight="bold",
                 color=THEME_COLORS["text"], transform=ax5.transAxes)
        ax5.text(0.85, y, value, fontsize=11, fontweight="bold",
                 color=THEME_COLORS["primary"], ha="right", transform=ax5.transAxes)

    ax5.set_title("Key Metrics", pad=10)
    ax5.patch.set_facecolor(THEME_COLORS["light"])
    ax5.patch.set_alpha(0.5)

    fig.suptitle(
        "Attendance Dashboard",
        fontsize=18, fontweight="bold", color=THEME_COLORS["primary"], y=1.01,
    )

    path = output_dir / "dashboard.png"
    fig.savefig(path)
    plt.close(fig)
    return path


# ── CLI ───────────────────────────────────────────────────────────────────

def render_all(data: Path, out: Path) -> list[tuple[str, Path]]:
    """Render every chart the export supports; returns (name, path) pairs."""
    with open(data / "summary.json") as f:
        summary = json.load(f)

    out.mkdir(parents=True, exist_ok=True)
    apply_theme()

    charts = [
        ("Daily Status", chart_daily_status(summary, out)),
        ("Rate Distribution", chart_rate_distribution(data / "student_stats.csv", out)),
        ("Course Attendance", chart_course_attendance(data / "course_stats.csv", out)),
        ("Alert Breakdown", chart_alert_breakdown(data / "alerts.json", out)),
        ("Source Mix", chart_source_mix(summary, out)),
        ("Dashboard", chart_dashboard(summary, out)),
    ]
    return [(n, p) for n, p in charts if p]


def main():
    parser = argparse.ArgumentParser(description="Attendance Dashboard Charts")
    parser.add_argument(
        "--data-dir",
        default="./output",
        help="Directory with exported JSON/CSV data",
    )
    parser.add_argument(
        "--output-dir",
        default="./output/charts",
        help="Directory to save charts",
    )
    args = parser.parse_args()

    data = Path(args.data_dir)
    out = Path(args.output_dir)

    summary_path = data / "summary.json"
    if not summary_path.exists():
        print(f"ERROR: {summary_path} not found.")
        print("Export a run first:")
        print("  python attendance_analytics.py --output all")
        sys.exit(1)

    print("Generating charts...")
    generated = render_all(data, out)

    print(f"\nGenerated {len(generated)} charts:")
    for name, path in generated:
        print(f"  {name:25s} -> {path}")

    print(f"\nAll charts saved to: {out}/")


if __name__ == "__main__":
    main()
