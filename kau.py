#!/usr/bin/env python3
"""
Kamal Accessories Updater

Checks the accessories declared in Kamal deploy*.yml files against their
container registries and, when asked to, rewrites each image line to the
newest version tag pinned by digest.
"""

__version__ = "1.0.0"

import json
import sys
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import argparse
import os

from deploy_file import AccessoryEntry, find_deploy_files, scan_accessories, update_accessory_image
from image_ref import parse_image_reference
from report import write_github_output
from settings import Settings
from version_resolver import VersionResolver
from version_utils import UNKNOWN, compare


# Constants
MODES = ('check', 'update', 'update-all')
APPLY_MODES = ('update', 'update-all')
DEFAULT_MODE = 'update-all'

STATUS_UP_TO_DATE = 'up_to_date'
STATUS_UPDATE_AVAILABLE = 'update_available'
STATUS_LOOKUP_FAILED = 'lookup_failed'

ProgressCallback = Callable[[str, Dict[str, Any]], None]


class UpdaterError(Exception):
    """Base class for errors that end a run."""


class ConfigDirectoryMissing(UpdaterError):
    pass


class MutationFailed(UpdaterError):
    """A deploy file could not be rewritten and the run was told to halt."""


@dataclass
class UpdatePlan:
    """A newer version found for one accessory."""
    file: Path
    accessory: str
    image: str
    old_version: str
    new_version: str
    digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file': str(self.file),
            'accessory': self.accessory,
            'image': self.image,
            'old_version': self.old_version,
            'new_version': self.new_version,
            'digest': self.digest,
        }


@dataclass
class AccessoryCheck:
    """Outcome of looking up one accessory."""
    entry: AccessoryEntry
    latest_version: str
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file': str(self.entry.file),
            'accessory': self.entry.name,
            'image': self.entry.image,
            'line': self.entry.line_number,
            'current_version': self.entry.current_version,
            'latest_version': self.latest_version,
            'status': self.status,
        }


@dataclass
class UpdateReport:
    total_accessories: int = 0
    checks: List[AccessoryCheck] = field(default_factory=list)
    updates: List[UpdatePlan] = field(default_factory=list)
    applied: int = 0
    failed: int = 0

    @property
    def updates_count(self) -> int:
        return len(self.updates)

    @property
    def updates_available(self) -> bool:
        return bool(self.updates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_accessories': self.total_accessories,
            'updates_count': self.updates_count,
            'applied': self.applied,
            'failed': self.failed,
            'updates': [plan.to_dict() for plan in self.updates],
            'checks': [check.to_dict() for check in self.checks],
        }


class AccessoryUpdater:
    def __init__(self, settings: Settings, resolver: Optional[VersionResolver] = None,
                 log_level: str = "INFO"):
        """
        Initialize the accessories updater.

        Args:
            settings: Directories, cache and network settings
            resolver: Version resolver (built from settings when omitted)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        self.settings = settings
        self.logger = self._setup_logging(log_level)
        self.resolver = resolver if resolver is not None else VersionResolver(settings)

    def _setup_logging(self, level: str) -> logging.Logger:
        """Setup logging configuration."""
        root = logging.getLogger()
        if not root.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            root.addHandler(handler)
        root.setLevel(getattr(logging, level.upper()))

        return logging.getLogger('AccessoryUpdater')

    def scan(self) -> List[AccessoryEntry]:
        """Collect accessories from every deploy*.yml in the config directory."""
        config_dir = self.settings.config_dir
        if not config_dir.is_dir():
            self.logger.error(f"Config directory not found: {config_dir}")
            raise ConfigDirectoryMissing(f"Config directory not found: {config_dir}")

        files = find_deploy_files(config_dir)
        if not files:
            self.logger.warning(f"No deploy*.yml files found in {config_dir}")

        entries = []
        for path in files:
            try:
                found = scan_accessories(path)
            except (OSError, UnicodeDecodeError) as e:
                self.logger.error(f"Error reading {path}: {e}")
                continue
            self.logger.debug(f"{path.name}: {len(found)} accessory(ies)")
            entries.extend(found)
        return entries

    def _lookup(self, entry: AccessoryEntry) -> str:
        return self.resolver.resolve_latest(entry.reference)

    def _resolve_all(self, entries: List[AccessoryEntry]) -> List[str]:
        """Latest version per entry, in entry order."""
        workers = min(self.settings.max_workers, len(entries))
        if workers <= 1:
            return [self._lookup(entry) for entry in entries]

        results: Dict[int, str] = {}
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._lookup, entry): idx for idx, entry in enumerate(entries)}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return [results[idx] for idx in range(len(entries))]

    @staticmethod
    def _classify(entry: AccessoryEntry, latest: str) -> str:
        if latest == UNKNOWN:
            return STATUS_LOOKUP_FAILED
        if latest != entry.current_version and compare(latest, entry.current_version) == 1:
            return STATUS_UPDATE_AVAILABLE
        return STATUS_UP_TO_DATE

    def check_for_updates(self, progress_callback: Optional[ProgressCallback] = None) -> UpdateReport:
        """Look up every accessory and plan the updates that are available.

        Args:
            progress_callback: Optional function(event_type, data) called for progress updates
        """
        entries = self.scan()
        report = UpdateReport(total_accessories=len(entries))
        self.logger.info(f"Checking {len(entries)} accessory(ies) in {self.settings.config_dir}...")

        for idx, entry in enumerate(entries, 1):
            self.logger.info(f"Checking {entry.name} ({entry.image}:{entry.current_version})...")
            if progress_callback:
                progress_callback('checking_accessory', {
                    'file': str(entry.file),
                    'accessory': entry.name,
                    'image': entry.image,
                    'progress': idx,
                    'total': len(entries),
                })

        latest_versions = self._resolve_all(entries)

        for entry, latest in zip(entries, latest_versions):
            status = self._classify(entry, latest)
            report.checks.append(AccessoryCheck(entry=entry, latest_version=latest, status=status))

            if status == STATUS_LOOKUP_FAILED:
                self.logger.warning(f"{entry.file.name}:{entry.line_number}: could not fetch latest version of {entry.image} for '{entry.name}'")
                if progress_callback:
                    progress_callback('lookup_failed', {'accessory': entry.name, 'image': entry.image})
                continue

            if status == STATUS_UP_TO_DATE:
                self.logger.info(f"{entry.name}: up to date ({entry.current_version})")
                if progress_callback:
                    progress_callback('up_to_date', {
                        'accessory': entry.name,
                        'image': entry.image,
                        'version': entry.current_version,
                    })
                continue

            self.logger.info(f"{entry.name}: UPDATE AVAILABLE: {entry.current_version} -> {latest}")
            plan = UpdatePlan(
                file=entry.file,
                accessory=entry.name,
                image=entry.image,
                old_version=entry.current_version,
                new_version=latest,
            )
            report.updates.append(plan)
            if progress_callback:
                progress_callback('update_found', plan.to_dict())

        self.logger.info(
            f"Summary: Found {report.updates_count} update(s) available "
            f"out of {report.total_accessories} accessory(ies)"
        )
        return report

    def apply_updates(self, report: UpdateReport, halt_on_failure: bool = False,
                      progress_callback: Optional[ProgressCallback] = None) -> UpdateReport:
        """Pin each planned update by digest and rewrite its deploy file.

        Each file rewrite is atomic on its own; a failure does not roll back
        files that were already rewritten.

        Raises:
            MutationFailed: a rewrite failed and halt_on_failure is set
        """
        if not report.updates:
            return report

        self.logger.info("Applying updates...")

        for plan in report.updates:
            self.logger.info(f"Fetching digest for {plan.image}:{plan.new_version}...")
            digest = self.resolver.resolve_digest(parse_image_reference(plan.image), plan.new_version)
            if digest == UNKNOWN:
                self.logger.warning(f"No digest for {plan.image}:{plan.new_version}, writing tag only")
                plan.digest = None
            else:
                self.logger.info(f"SHA256: {digest[:12]}...")
                plan.digest = digest

            if update_accessory_image(plan.file, plan.accessory, plan.new_version, plan.digest):
                report.applied += 1
                if progress_callback:
                    progress_callback('update_applied', plan.to_dict())
                continue

            report.failed += 1
            if progress_callback:
                progress_callback('update_failed', plan.to_dict())
            if halt_on_failure:
                raise MutationFailed(f"Could not update {plan.accessory} in {plan.file}")

        self.logger.info(f"Applied {report.applied} update(s) successfully")
        if report.failed:
            self.logger.error(f"Failed to apply {report.failed} update(s)")
        return report

    def run(self, mode: str = DEFAULT_MODE, halt_on_failure: bool = False,
            progress_callback: Optional[ProgressCallback] = None) -> UpdateReport:
        """Check for updates and apply them when mode asks for it."""
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}', expected one of {', '.join(MODES)}")

        report = self.check_for_updates(progress_callback)

        if not report.updates:
            self.logger.info("All accessories are up to date")
            return report

        if mode in APPLY_MODES:
            self.apply_updates(report, halt_on_failure, progress_callback)
        else:
            self.logger.info(f"Mode is '{mode}' - updates not applied")

        return report


def main(argv: Optional[List[str]] = None) -> int:
    try:
        env = Settings.from_env()
    except ValueError as e:
        logging.error(f"{e}")
        return 1

    parser = argparse.ArgumentParser(
        description='Kamal accessories updater'
    )
    parser.add_argument(
        'config_dir',
        nargs='?',
        default=str(env.config_dir),
        help='Directory with deploy*.yml files (env: CONFIG_DIR, default: config)'
    )
    parser.add_argument(
        'mode',
        nargs='?',
        choices=MODES,
        default=os.environ.get('MODE', DEFAULT_MODE),
        help='check, update or update-all (env: MODE, default: update-all)'
    )
    parser.add_argument(
        '--cache-dir',
        default=str(env.cache_dir),
        help='Directory for cached registry lookups (env: CACHE_DIR)'
    )
    parser.add_argument(
        '--cache-ttl',
        type=int,
        default=env.cache_ttl,
        help='Seconds a cached lookup stays valid (env: CACHE_TTL, default: 3600)'
    )
    parser.add_argument(
        '--negative-cache-ttl',
        type=int,
        default=env.negative_cache_ttl,
        help='Seconds a failed lookup stays cached (env: NEGATIVE_CACHE_TTL, default: same as --cache-ttl)'
    )
    parser.add_argument(
        '--ghcr-token',
        default=env.ghcr_token,
        help='Bearer token for ghcr.io instead of an anonymous one (env: GHCR_TOKEN)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        default=env.request_timeout,
        help='HTTP request timeout in seconds (env: REQUEST_TIMEOUT, default: 30)'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=env.max_workers,
        help='Concurrent registry lookups, 1 for sequential (env: MAX_WORKERS, default: 4)'
    )
    parser.add_argument(
        '--halt-on-failure',
        action='store_true',
        default=os.environ.get('HALT_ON_FAILURE', '').lower() == 'true',
        help='Stop at the first deploy file that cannot be rewritten (env: HALT_ON_FAILURE)'
    )
    parser.add_argument(
        '--github-output',
        default=os.environ.get('GITHUB_OUTPUT'),
        help='File to append GitHub Actions step outputs to (env: GITHUB_OUTPUT)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the full report as JSON on stdout'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)

    try:
        settings = Settings(
            config_dir=Path(args.config_dir),
            cache_dir=Path(args.cache_dir),
            cache_ttl=args.cache_ttl,
            negative_cache_ttl=args.negative_cache_ttl,
            ghcr_token=args.ghcr_token or None,
            request_timeout=args.timeout,
            max_workers=args.max_workers,
        )
        updater = AccessoryUpdater(settings, log_level=args.log_level)
        report = updater.run(args.mode, halt_on_failure=args.halt_on_failure)
    except UpdaterError as e:
        logging.error(f"{e}")
        return 1
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        return 1

    write_github_output(args.github_output, report)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))

    return 1 if report.failed else 0


if __name__ == '__main__':
    sys.exit(main())
