# This file is part of the ZFS Snapshot Catch-up Tool.
# Copyright (C) 2025 Holstein IT-Solutions
# Author: Michael Bielicki
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

import json
import os
import sys

import pytest


def _ensure_script_dir_on_path():
    # The tool is a single script living in zfs-snapcatch/, not a package.
    script_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "zfs-snapcatch"))
    if script_dir not in sys.path:
        sys.path.insert(0, script_dir)


_ensure_script_dir_on_path()

import snapcatch  # noqa: E402


class FakeHost:
    """Stands in for midclt and zfs by answering the commands snapcatch runs."""

    def __init__(self):
        self.tasks = []
        self.snapshots = []  # (name, creation)
        self.run_results = {}  # task id -> raw midclt output
        self.run_failures = set()
        self.job_states = {}  # job id -> states returned by successive polls
        self.destroy_failures = set()
        self.query_fails = False
        self.list_fails = False
        self.calls = []

    def add_task(self, task_id, dataset, naming_schema, enabled=True, **schedule):
        sched = {'minute': '0', 'hour': '0', 'dom': '*', 'month': '*', 'dow': '*'}
        sched.update(schedule)
        self.tasks.append({
            'id': task_id,
            'dataset': dataset,
            'naming_schema': naming_schema,
            'enabled': enabled,
            'schedule': sched,
        })

    def runs(self):
        return [c for c in self.calls if c[:3] == ['midclt', 'call', 'pool.snapshottask.run']]

    def job_polls(self):
        return [c for c in self.calls if c[:3] == ['midclt', 'call', 'core.get_jobs']]

    def destroys(self):
        return [c[-1] for c in self.calls if c[:2] == ['zfs', 'destroy']]

    def __call__(self, cmd):
        self.calls.append(list(cmd))
        if cmd[0] == 'midclt':
            return self._midclt(cmd[2], cmd[3:])
        if cmd[0] == 'zfs' and cmd[1] == 'list':
            return self._zfs_list(cmd)
        if cmd[0] == 'zfs' and cmd[1] == 'destroy':
            return self._zfs_destroy(cmd[-1])
        return "", f"unexpected command {cmd}", 1

    def _midclt(self, method, params):
        if method == 'pool.snapshottask.query':
            if self.query_fails:
                return "", "Failed connecting to middleware", 1
            return json.dumps(self.tasks), "", 0
        if method == 'pool.snapshottask.get_instance':
            for task in self.tasks:
                if task['id'] == int(params[0]):
                    return json.dumps(task), "", 0
            return "", f"[ENOENT] PeriodicSnapshotTask {params[0]} does not exist", 1
        if method == 'pool.snapshottask.run':
            task_id = int(params[0])
            if task_id in self.run_failures:
                return "", "[EFAULT] task is already running", 1
            return self.run_results.get(task_id, 'null'), "", 0
        if method == 'core.get_jobs':
            job_id = json.loads(params[0])[0][2]
            states = self.job_states.get(job_id, [])
            if not states:
                return "[]", "", 0
            state = states.pop(0) if len(states) > 1 else states[0]
            return json.dumps([{'id': job_id, 'state': state, 'error': 'boom' if state == 'FAILED' else None}]), "", 0
        return "", f"unknown method {method}", 1

    def _zfs_list(self, cmd):
        if self.list_fails:
            return "", "cannot open 'tank': dataset does not exist", 1
        dataset = cmd[-1]
        recursive = '-r' in cmd
        rows = []
        for name, creation in self.snapshots:
            ds = name.split('@', 1)[0]
            if ds == dataset or (recursive and ds.startswith(dataset + '/')):
                rows.append((name, creation))
        rows.sort(key=lambda r: r[1], reverse=True)
        return "\n".join(f"{n}\t{c}" for n, c in rows), "", 0

    def _zfs_destroy(self, name):
        if name in self.destroy_failures:
            return "", f"cannot destroy '{name}': dataset is busy", 1
        self.snapshots = [s for s in self.snapshots if s[0] != name]
        return "", "", 0


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    monkeypatch.setattr(snapcatch, "run_cmd", fake)
    return fake


@pytest.fixture
def config():
    cfg = snapcatch.DEFAULT_CONFIG.copy()
    cfg.update({'logfile': None, 'syslog': False, 'root': 'tank'})
    return cfg


class FakeSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, secs):
        self.calls.append(secs)


@pytest.fixture
def sleep():
    return FakeSleep()
