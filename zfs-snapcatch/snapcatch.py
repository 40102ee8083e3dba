#!/usr/bin/env python3

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

"""
ZFS Snapshot Catch-up Tool

Description:
    For TrueNAS machines that don't run 24/7 and frequently miss scheduled
    periodic snapshot tasks due to downtime. Run it post-init (or from cron):
    every enabled snapshot task whose newest snapshot is older than the task's
    schedule interval is run once and awaited. Afterwards all snapshots under
    the root dataset are checked against the configured tasks; snapshots no
    task produced ("unlinked") are reported, or destroyed with --prune.

Usage:
    ./snapcatch.py [options]

Options:
    --prune           Destroy unlinked snapshots instead of only reporting them
    -c, --config      Path to YAML config file (default: /etc/snapcatch.yaml)

    Any other argument is ignored. The exit code is always 0, failures are
    only written to the log.
"""

import argparse
import json
import logging
import logging.handlers
import os
import re
import subprocess
import sys
import time
from collections import namedtuple

import yaml

DEFAULT_CONFIG_PATH = "/etc/snapcatch.yaml"

DEFAULT_CONFIG = {
    'logfile': '/var/log/snapcatch.log',
    'syslog': True,
    'syslog_address': '/dev/log',
    'syslog_ident': 'snapcatch',
    'root': 'tank',
    'protected': [],
    'task_ids': None,
    'poll_interval': 2,
    'max_polls': 300,
    'midclt': 'midclt',
    'zfs': 'zfs',
}

# Datasets of the platform's app runtime, never eligible for pruning.
PLATFORM_PROTECTED = [
    r'[^/]+/ix-applications(/|$)',
    r'[^/]+/\.ix-apps(/|$)',
]

MINUTE = 60
HOUR = 3600
DAY = 86400
WEEK = 604800
MONTH = 2592000  # 30 days

# Task outcomes
FRESH = 'FRESH'
SUCCESS = 'SUCCESS'
FAILED = 'FAILED'
TIMEOUT = 'TIMEOUT'
UNKNOWN_RESULT = 'UNKNOWN_RESULT'
SKIPPED = 'SKIPPED'

Schedule = namedtuple('Schedule', ['minute', 'hour', 'dom', 'dow'])
SnapshotTask = namedtuple('SnapshotTask', ['id', 'dataset', 'naming_schema', 'enabled', 'schedule'])
Snapshot = namedtuple('Snapshot', ['name', 'creation'])

# Result of pool.snapshottask.run
Completed = namedtuple('Completed', [])
Pending = namedtuple('Pending', ['job_id'])
Unexpected = namedtuple('Unexpected', ['raw'])


def load_config(path):
    if not os.path.exists(path):
        return DEFAULT_CONFIG.copy()
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    config = DEFAULT_CONFIG.copy()
    config.update(data or {})
    return config


def setup_logging(config):
    """Log to the configured logfile (or stderr) and, if available, to syslog."""
    fmt = '%(asctime)s %(levelname)s: %(message)s'
    handlers = []
    if config.get('logfile'):
        handlers.append(logging.FileHandler(config['logfile']))
    else:
        handlers.append(logging.StreamHandler())
    if config.get('syslog') and os.path.exists(config['syslog_address']):
        syslog = logging.handlers.SysLogHandler(address=config['syslog_address'])
        syslog.setFormatter(logging.Formatter(f"{config['syslog_ident']}: %(message)s"))
        handlers.append(syslog)
    logging.basicConfig(level=logging.INFO, format=fmt, handlers=handlers, force=True)


def run_cmd(cmd):
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        return "", str(e), 127
    return result.stdout.strip(), result.stderr.strip(), result.returncode


def midclt_call(config, method, *params):
    cmd = [config['midclt'], 'call', method] + [str(p) for p in params]
    return run_cmd(cmd)


def midclt_json(config, method, *params):
    """Call a middleware method and decode its JSON output. Returns None on failure."""
    out, err, code = midclt_call(config, method, *params)
    if code != 0:
        logging.error(f"midclt call {method} failed: {err}")
        return None
    try:
        return json.loads(out) if out else None
    except ValueError:
        logging.error(f"midclt call {method} returned malformed output: {out!r}")
        return None


# ---------------------------------------------------------------------------
# Schedule interval inference
# ---------------------------------------------------------------------------

def step_value(field):
    """Return N for a step expression '*/N', else None."""
    match = re.fullmatch(r'\*/(\d+)', str(field).strip())
    if not match or int(match.group(1)) == 0:
        return None
    return int(match.group(1))


def is_wildcard(field):
    return str(field).strip() == '*'


def infer_interval(schedule):
    """
    Expected seconds between two runs of a cron-like schedule.

    An unconstrained schedule gets the daily default. Otherwise the
    first match wins: a minute step, an hour step, every hour, a constrained
    day-of-week (weekly), a constrained day-of-month (monthly), else daily.
    Combined day-of-week/day-of-month constraints and lists like '1,15' are
    not resolved any further than this order.
    """
    if all(is_wildcard(f) for f in schedule):
        return DAY
    minutes = step_value(schedule.minute)
    if minutes:
        return minutes * MINUTE
    hours = step_value(schedule.hour)
    if hours:
        return hours * HOUR
    if is_wildcard(schedule.hour):
        return HOUR
    if not is_wildcard(schedule.dow):
        return WEEK
    if not is_wildcard(schedule.dom):
        return MONTH
    return DAY


def interval_label(interval):
    if interval >= MONTH:
        return 'Monthly'
    if interval >= WEEK:
        return 'Weekly'
    if interval >= DAY:
        return 'Daily'
    if interval >= HOUR:
        return 'Hourly'
    return f"Every {interval // MINUTE} minutes"


# ---------------------------------------------------------------------------
# Tasks and snapshots
# ---------------------------------------------------------------------------

def task_prefix(naming_schema):
    # e.g. "auto-weekly-%Y%m%d" -> "auto-weekly-"
    return naming_schema.split('%', 1)[0]


def parse_task(record):
    """Build a SnapshotTask from a middleware record, or None if it is unusable."""
    if not isinstance(record, dict):
        return None
    try:
        task_id = int(record['id'])
        dataset = record['dataset']
        naming_schema = record['naming_schema']
    except (KeyError, TypeError, ValueError):
        return None
    if not dataset or not naming_schema:
        return None
    raw = record.get('schedule') or {}
    schedule = Schedule(
        minute=str(raw.get('minute', '*')),
        hour=str(raw.get('hour', '*')),
        dom=str(raw.get('dom', '*')),
        dow=str(raw.get('dow', '*')),
    )
    return SnapshotTask(task_id, dataset, naming_schema, bool(record.get('enabled', False)), schedule)


def load_tasks(config):
    """
    Fetch the configured snapshot tasks.

    Returns (tasks, ok). ok is False when the task configuration could not be
    read at all; callers must not treat that as "no tasks configured".
    """
    task_ids = config.get('task_ids')
    records = []
    if task_ids:
        for task_id in task_ids:
            record = midclt_json(config, 'pool.snapshottask.get_instance', task_id)
            if record is None:
                logging.warning(f"Snapshot task {task_id} not found, skipping")
                continue
            records.append(record)
    else:
        records = midclt_json(config, 'pool.snapshottask.query')
        if not isinstance(records, list):
            logging.error("Could not query snapshot tasks")
            return [], False

    tasks = []
    for record in records:
        task = parse_task(record)
        if task is None:
            logging.warning(f"Ignoring incomplete snapshot task record: {record!r}")
            continue
        tasks.append(task)
    return tasks, True


def parse_snapshot_list(out):
    snapshots = []
    for line in out.splitlines():
        fields = line.split('\t')
        if len(fields) < 2:
            continue
        try:
            snapshots.append(Snapshot(fields[0], int(fields[1])))
        except ValueError:
            logging.warning(f"Skipping unparsable snapshot line: {line!r}")
    return snapshots


def list_snapshots(config, dataset, recursive=False):
    """Snapshots of dataset, newest first. Returns None if the listing failed."""
    cmd = [config['zfs'], 'list', '-H', '-p', '-t', 'snapshot', '-o', 'name,creation', '-S', 'creation']
    cmd += ['-r'] if recursive else ['-d', '1']
    cmd.append(dataset)
    out, err, code = run_cmd(cmd)
    if code != 0:
        logging.warning(f"Failed to list snapshots of {dataset}: {err}")
        return None
    return parse_snapshot_list(out)


def snapshot_dataset(name):
    return name.split('@', 1)[0]


def snapshot_matches(name, prefix):
    return name.partition('@')[2].startswith(prefix)


def get_last_snap_ts(config, dataset, prefix):
    """Creation time of the newest snapshot of dataset matching prefix, 0 if there is none."""
    for snap in list_snapshots(config, dataset) or []:
        if snapshot_matches(snap.name, prefix):
            return snap.creation
    return 0


# ---------------------------------------------------------------------------
# Task runner
# ---------------------------------------------------------------------------

def parse_run_result(out):
    text = out.strip()
    if text in ('', 'null'):
        return Completed()
    if re.fullmatch(r'\d+', text):
        return Pending(int(text))
    return Unexpected(text)


def start_task(config, task_id):
    out, err, code = midclt_call(config, 'pool.snapshottask.run', task_id)
    if code != 0:
        return Unexpected(err or out)
    return parse_run_result(out)


def get_job(config, job_id):
    """Job record for job_id, or None once the middleware has purged it."""
    jobs = midclt_json(config, 'core.get_jobs', json.dumps([["id", "=", job_id]]))
    if isinstance(jobs, list) and jobs and isinstance(jobs[0], dict):
        return jobs[0]
    return None


def wait_for_job(config, job_id, label, sleep=time.sleep):
    for _ in range(int(config['max_polls'])):
        sleep(config['poll_interval'])
        job = get_job(config, job_id)
        state = job.get('state') if job else None
        if state == 'SUCCESS':
            logging.info(f"{label} task finished successfully")
            return SUCCESS
        if state in ('FAILED', 'ABORTED'):
            logging.error(f"{label} task {state}: {job.get('error') or 'no error message'}")
            return FAILED
        if not state:
            logging.info(f"Job {job_id} no longer found, assuming finished")
            return SUCCESS
    logging.error(f"TIMEOUT waiting for job {job_id}")
    return TIMEOUT


def run_task_and_wait(config, task, interval, now=None, sleep=time.sleep):
    label = interval_label(interval)
    prefix = task_prefix(task.naming_schema)
    last_ts = get_last_snap_ts(config, task.dataset, prefix)
    now = time.time() if now is None else now
    age = int(now) - last_ts

    if age < interval:
        logging.info(f"{label} snapshot of {task.dataset} is fresh (task {task.id})")
        return FRESH

    logging.info(f"{label} snapshot of {task.dataset} missing -> running task {task.id}")
    result = start_task(config, task.id)
    if isinstance(result, Completed):
        logging.info(f"{label} task {task.id} finished")
        return SUCCESS
    if isinstance(result, Unexpected):
        logging.error(f"ERROR - Failed to start task {task.id}: {result.raw!r}")
        return UNKNOWN_RESULT

    logging.info(f"Waiting for job {result.job_id}...")
    return wait_for_job(config, result.job_id, label, sleep=sleep)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def compile_protected(config):
    patterns = list(config.get('protected') or []) + PLATFORM_PROTECTED
    return [re.compile(p) for p in patterns]


def is_protected(name, protected):
    dataset = snapshot_dataset(name)
    return any(p.match(dataset) for p in protected)


def classify_snapshots(snapshots, prefixes, protected):
    """Split snapshots into (linked, unlinked, skipped_protected) lists."""
    linked, unlinked, skipped = [], [], []
    for snap in snapshots:
        if is_protected(snap.name, protected):
            skipped.append(snap)
        elif any(snapshot_matches(snap.name, p) for p in prefixes):
            linked.append(snap)
        else:
            unlinked.append(snap)
    return linked, unlinked, skipped


def destroy_snapshots(config, snapshots):
    destroyed = 0
    for snap in snapshots:
        _, err, code = run_cmd([config['zfs'], 'destroy', snap.name])
        if code == 0:
            logging.info(f"Destroyed: {snap.name}")
            destroyed += 1
        else:
            logging.error(f"Failed to destroy {snap.name}: {err}")
    return destroyed


def prefix_counts(snapshots, prefixes):
    return {p: sum(1 for s in snapshots if snapshot_matches(s.name, p)) for p in sorted(prefixes)}


def reconcile_snapshots(config, prefixes, prune=False):
    """Find unlinked snapshots under the root dataset, destroying them in prune mode."""
    root = config['root']
    snapshots = list_snapshots(config, root, recursive=True)
    if snapshots is None:
        return None

    linked, unlinked, skipped = classify_snapshots(snapshots, prefixes, compile_protected(config))
    for snap in unlinked:
        logging.info(f"Unlinked snapshot: {snap.name}")

    destroyed = 0
    if prune:
        destroyed = destroy_snapshots(config, unlinked)
    elif unlinked:
        logging.info(f"{len(unlinked)} unlinked snapshots found, run with --prune to destroy them")

    stats = {
        'total': len(snapshots),
        'root': sum(1 for s in snapshots if snapshot_dataset(s.name) == root),
        'linked': len(linked),
        'unlinked': len(unlinked),
        'protected': len(skipped),
        'destroyed': destroyed,
        'per_prefix': prefix_counts(snapshots, prefixes),
    }
    for prefix, count in stats['per_prefix'].items():
        logging.info(f"Snapshots with prefix '{prefix}': {count}")
    logging.info(
        f"Snapshots under {root}: {stats['total']} recursive, {stats['root']} on {root} itself, "
        f"{stats['linked']} linked, {stats['unlinked']} unlinked, {stats['protected']} protected, "
        f"{stats['destroyed']} destroyed"
    )
    return stats


def catch_up(config, prune=False, now=None, sleep=time.sleep):
    """Run every stale task, then reconcile. Returns ({task_id: outcome}, stats)."""
    tasks, ok = load_tasks(config)
    outcomes = {}
    for task in tasks:
        if not task.enabled:
            logging.info(f"Snapshot task {task.id} ({task.dataset}) is disabled, skipping")
            outcomes[task.id] = SKIPPED
            continue
        interval = infer_interval(task.schedule)
        outcomes[task.id] = run_task_and_wait(config, task, interval, now=now, sleep=sleep)

    if not ok:
        logging.error("Task configuration unavailable, skipping unlinked snapshot check")
        return outcomes, None

    prefixes = {task_prefix(t.naming_schema) for t in tasks}
    return outcomes, reconcile_snapshots(config, prefixes, prune=prune)


class UsageError(Exception):
    pass


class ArgumentParser(argparse.ArgumentParser):
    """Only the exact flag --prune enables prune mode; bad arguments never exit."""

    def __init__(self):
        super(ArgumentParser, self).__init__(description="ZFS Snapshot Catch-up Tool", allow_abbrev=False)
        self.add_argument("--prune", action="store_true", help="Destroy unlinked snapshots")
        self.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config file")

    def error(self, message):
        raise UsageError(message)


def parse_args(argv=None):
    """
    Returns (args, ignored). If the arguments cannot be parsed at all, all of
    them are ignored and the report-only defaults are used.
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    try:
        return ArgumentParser().parse_known_args(argv)
    except UsageError:
        return argparse.Namespace(prune=False, config=DEFAULT_CONFIG_PATH), argv


def main(argv=None):
    args, unknown = parse_args(argv)
    config = load_config(args.config)
    setup_logging(config)

    if unknown:
        logging.warning(f"Ignoring unknown arguments: {' '.join(unknown)}")
    logging.info(f"starting snapshot catch-up ({'prune' if args.prune else 'report-only'} mode)")
    catch_up(config, prune=args.prune)
    logging.info("done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
