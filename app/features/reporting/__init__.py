"""
Reporting feature package.

Scheduled report generation for the venue: the job scheduler and its Redis
queue, the daily/weekly report generators, the nightly aggregation and
cleanup jobs, job monitoring with alerts, and report distribution. Every
layer lives in this slice (domain, repository, pipeline, services, jobs, api).
"""

# Re-export the primary building blocks for easy access.
from .container import ReportingContainer, build_reporting_container  # noqa: F401
from .api.router import router as reporting_router  # noqa: F401
from .domain.models import JobPriority, JobStatus, JobType  # noqa: F401
