"""
Dependency resolution for pipeline jobs.

Turns a pipeline's jobs into batches: every job appears in a later batch
than all of the jobs it depends on, and jobs within one batch do not depend
on each other. Within a batch, jobs are ordered by (job_order, name) so the
output is the same for the same input.

Pure functions over PipelineJob lists; never touches storage.
"""

import logging
from typing import Iterable, Sequence

from .entities import PipelineJob
from .errors import CycleError, UnknownDependencyError, ValidationError


logger = logging.getLogger(__name__)


def _sort_key(job: PipelineJob) -> tuple[int, str]:
    return job.job_order, job.name


class DependencyResolver:
    """
    Batched topological sort (Kahn's algorithm, one level at a time).

    Usage:
        batches = DependencyResolver().resolve(jobs)
        # [[step-1], [step-2, step-3], ...]
    """

    def resolve(self, jobs: Sequence[PipelineJob]) -> list[list[PipelineJob]]:
        """
        Resolve jobs into dependency-ordered batches.

        Raises:
            ValidationError: If two jobs share a name
            UnknownDependencyError: If a job depends on a name not in jobs
            CycleError: If the dependency graph has a cycle
        """
        by_name: dict[str, PipelineJob] = {}
        for job in jobs:
            if job.name in by_name:
                raise ValidationError(f"Duplicate job name '{job.name}'")
            by_name[job.name] = job

        for job in sorted(jobs, key=_sort_key):
            for dependency in job.depends_on:
                if dependency not in by_name:
                    raise UnknownDependencyError(job.name, dependency)

        remaining = {name: len(set(job.depends_on)) for name, job in by_name.items()}
        dependents: dict[str, list[str]] = {name: [] for name in by_name}
        for job in jobs:
            for dependency in set(job.depends_on):
                dependents[dependency].append(job.name)

        batches: list[list[PipelineJob]] = []
        ready = [by_name[name] for name, count in remaining.items() if count == 0]

        while ready:
            batch = sorted(ready, key=_sort_key)
            batches.append(batch)

            ready = []
            for job in batch:
                for child in dependents[job.name]:
                    remaining[child] -= 1
                    if remaining[child] == 0:
                        ready.append(by_name[child])

        resolved = sum(len(batch) for batch in batches)
        if resolved < len(by_name):
            unresolved = [name for name, count in remaining.items() if count > 0]
            path = self._find_cycle(by_name, unresolved)
            logger.warning(f"Dependency cycle detected: {' -> '.join(path)}")
            raise CycleError(path)

        return batches

    def validate(self, jobs: Sequence[PipelineJob]) -> None:
        """Raise the same errors as resolve() without returning batches."""
        self.resolve(jobs)

    def execution_order(self, jobs: Sequence[PipelineJob]) -> list[PipelineJob]:
        """Flattened batches: the order job runs are created in."""
        return [job for batch in self.resolve(jobs) for job in batch]

    def _find_cycle(self, by_name: dict[str, PipelineJob], unresolved: Iterable[str]) -> list[str]:
        """
        Depth-first search over the unresolved jobs for one cycle.

        Starts from unresolved jobs in (job_order, name) order and follows
        dependencies by name, so the reported path is deterministic.
        """
        unresolved_set = set(unresolved)
        # 0 = unvisited, 1 = on the current path, 2 = done
        state = {name: 0 for name in unresolved_set}
        starts = sorted((by_name[name] for name in unresolved_set), key=_sort_key)

        for start in starts:
            if state[start.name] != 0:
                continue

            path: list[str] = [start.name]
            state[start.name] = 1
            stack = [iter(sorted(set(start.depends_on) & unresolved_set))]

            while stack:
                dependency = next(stack[-1], None)
                if dependency is None:
                    stack.pop()
                    state[path.pop()] = 2
                    continue

                if state[dependency] == 1:
                    cycle = path[path.index(dependency):]
                    return cycle + [dependency]

                if state[dependency] == 0:
                    state[dependency] = 1
                    path.append(dependency)
                    stack.append(iter(sorted(set(by_name[dependency].depends_on) & unresolved_set)))

        # Kahn's algorithm left jobs unresolved, so a cycle exists
        raise ValidationError("Dependency graph is not acyclic")
