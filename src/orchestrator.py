"""
Concurrent fan-out of the per-VM agent installer across a fleet.
"""

import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, List, Optional

from agent_installer import AgentInstaller
from models import AgentInstallJob, FleetSummary, JobOutcome

logger = logging.getLogger(__name__)


class FleetOrchestrator:
    """Runs one agent install per VM concurrently and joins on all of them."""

    def __init__(self, installer: AgentInstaller, report_dir: Optional[str] = None):
        """
        Initialize the orchestrator.

        Args:
            installer: Per-VM agent installer (shared; it holds no per-VM state)
            report_dir: Directory for the JSON report, or None to skip it
        """
        self.installer = installer
        self.report_dir = report_dir

        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None

    def _run_job(self, vm_name: str, index: int, total: int) -> AgentInstallJob:
        return self.installer.install(vm_name, index=index, total=total)

    def run(self, vm_names: List[str]) -> FleetSummary:
        """
        Install the agent on every VM concurrently.

        There is no fail-fast: a failing (or crashing) job never cancels or
        affects its siblings, and every job is joined before returning.

        Args:
            vm_names: VMs to set up

        Returns:
            FleetSummary with one job per VM
        """
        self.run_start_time = time.time()
        summary = FleetSummary()
        total = len(vm_names)
        if not vm_names:
            logger.warning("No VMs to set up")
            self.run_end_time = time.time()
            return summary

        logger.info("=" * 70)
        logger.info(f"Setting Up {total} VM(s)")
        logger.info("=" * 70)

        results: Dict[str, AgentInstallJob] = {}
        with ThreadPoolExecutor(max_workers=total, thread_name_prefix="vm-setup") as executor:
            futures = {
                executor.submit(self._run_job, name, index, total): (name, index)
                for index, name in enumerate(vm_names, start=1)
            }
            for future in as_completed(futures):
                name, index = futures[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.exception(f"[{name}] Setup crashed: {e}")
                    results[name] = AgentInstallJob(
                        vm_name=name,
                        index=index,
                        outcome=JobOutcome.FAILED,
                        error_message=f"Unexpected error: {e}",
                    )

        # Report in fleet order regardless of completion order
        for name in vm_names:
            summary.jobs[name] = results[name]

        self.run_end_time = time.time()
        self._print_report(summary)
        if self.report_dir:
            self._export_results_json(summary)
        return summary

    @staticmethod
    def _format_duration(seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = seconds % 60
            return f"{mins}m {secs:.0f}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            secs = seconds % 60
            return f"{hours}h {mins}m {secs:.0f}s"

    def _print_report(self, summary: FleetSummary) -> None:
        """Print the setup summary and per-VM details."""
        logger.info("")
        logger.info("Setup Summary:")
        logger.info(f"  Total VMs:               {summary.total}")
        logger.info(f"  Successfully configured: {summary.success}")
        logger.info(f"  Failed:                  {summary.failed}")
        logger.info(
            f"  Total duration:          {self._format_duration(self.run_end_time - self.run_start_time)}"
        )

        succeeded = [j for j in summary.jobs.values() if j.outcome is JobOutcome.SUCCESS]
        if succeeded:
            logger.info("")
            logger.info(f"{'VM':<25} {'Duration'}")
            logger.info("-" * 40)
            for job in succeeded:
                duration = job.duration_seconds
                logger.info(
                    f"{job.vm_name:<25} {self._format_duration(duration) if duration else 'N/A'}"
                )

        if summary.failed:
            logger.info("")
            logger.info("Failed VMs:")
            for name in summary.failed_names:
                job = summary.jobs[name]
                error = job.error_message or "Unknown"
                if len(error) > 80:
                    error = error[:80] + "..."
                logger.info(f"  - {name}: {error}")

    def _export_results_json(self, summary: FleetSummary) -> str:
        """Export results to JSON file for further processing."""
        report = {
            "start_time": datetime.fromtimestamp(self.run_start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.run_end_time).isoformat(),
            "total_duration_seconds": self.run_end_time - self.run_start_time,
            "statistics": {
                "total": summary.total,
                "success": summary.success,
                "failed": summary.failed,
                "failed_names": summary.failed_names,
            },
            "results": [
                {
                    "vm_name": job.vm_name,
                    "index": job.index,
                    "outcome": job.outcome.value,
                    "duration_seconds": job.duration_seconds,
                    "error_message": job.error_message,
                    "service_status": job.service_status,
                }
                for job in summary.jobs.values()
            ],
        }

        os.makedirs(self.report_dir, exist_ok=True)
        filename = os.path.join(
            self.report_dir,
            f"agent-setup-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json",
        )
        with open(filename, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
        return filename
