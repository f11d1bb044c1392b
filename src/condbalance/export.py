"""Provides functionality for exporting assignment records to .csv.

Use it via the command line from within your study directory::

    condbalance export

.. seealso:: :mod:`condbalance.cli.export`
"""

import csv
import os
from dataclasses import asdict
from pathlib import Path
from typing import Iterable, List

from .store import Assignment

FIELDNAMES = ["participant_id", "session_id", "condition_id", "status", "assigned_at", "completed_at"]


class Exporter:
    """
    Writes assignment records to a csv file.

    Args:
        balancer (condbalance.balancer.Balancer): The balancer whose
            store should be exported.
        out_path (str): Directory in which to place the csv file. If
            None (default), the current working directory will be used.
        delimiter (str): Delimiter to use in the csv file. Defaults to ";"
    """

    def __init__(self, balancer, out_path: str = None, delimiter: str = ";"):
        self.balancer = balancer
        self.out_path = Path(out_path) if out_path is not None else Path.cwd()
        self.delimiter = delimiter

    def export_assignments(self, session_id: str = None) -> str:
        """
        Exports the assignments of one session, or of all sessions if
        *session_id* is *None*.

        Returns:
            str: Name of the written file.
        """
        assignments = self.balancer.assignments(session_id)
        filename = f"assignments_{session_id}.csv" if session_id is not None else "assignments.csv"

        self.out_path.mkdir(parents=True, exist_ok=True)
        csvname = find_unique_name(directory=self.out_path, filename=filename)
        self.write(
            data=self.flatten(assignments),
            fieldnames=FIELDNAMES,
            path=self.out_path / csvname,
            delimiter=self.delimiter,
        )
        return csvname

    @staticmethod
    def flatten(assignments: Iterable[Assignment]) -> List[dict]:
        rows = []
        for assignment in assignments:
            row = asdict(assignment)
            for key in ("assigned_at", "completed_at"):
                if row[key] is not None:
                    row[key] = row[key].isoformat()
            rows.append(row)
        return rows

    @staticmethod
    def write(data: Iterable[dict], fieldnames: List[str], path: Path, delimiter: str):
        """
        Writes a list of dictionaries to a csv file.
        """
        with open(path, "w", encoding="utf-8", newline="") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames, delimiter=delimiter)
            writer.writeheader()
            writer.writerows(data)


def find_unique_name(directory, filename, index: int = 1) -> str:
    """
    Returns *filename*, or *filename* with an index appended, such that
    no file of that name exists in *directory*.
    """
    filename = Path(filename)
    name = filename.stem
    ext = filename.suffix

    normal_name = name + ext
    idx_name = name + f"_{index}" + ext

    existing = os.listdir(directory)
    if normal_name not in existing:
        return normal_name
    elif idx_name not in existing:
        return idx_name
    else:
        return find_unique_name(directory=directory, filename=filename, index=index + 1)
