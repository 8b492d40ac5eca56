"""Plugin test execution.

:class:`TestRunner` runs a plugin's tests with one of the supported
JavaScript test frameworks and normalizes what it reports into a
:class:`TestRunSummary`. Each framework writes a JSON result file (and a
coverage summary when coverage is on) into a temporary directory that is
removed after every run.
"""

from __future__ import annotations

import abc
import enum
import json
import pathlib
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, assert_never

from caskit.build.process import npx, run_tool
from caskit.core.logging_manager import get_logger
from caskit.utils.exceptions import ProcessSpawnError

logger = get_logger(__name__)

RESULTS_FILENAME = "results.json"
COVERAGE_DIRNAME = "coverage"
COVERAGE_SUMMARY_FILENAME = "coverage-summary.json"


class TestFramework(str, enum.Enum):
    JEST = "jest"
    VITEST = "vitest"
    MOCHA = "mocha"


@dataclass
class TestConfig:
    """How to run a plugin's tests.

    Attributes:
        framework: Test framework to run
        coverage: Collect coverage
        watch: Keep running and re-test on changes
        test_name_pattern: Only run tests whose name matches
        test_path_pattern: Only run test files whose path matches
        verbose: Report every test
        ci: Non-interactive run for continuous integration
        coverage_threshold: Minimum percentage every coverage metric must reach
        config_file: Framework configuration file, relative to the plugin root
    """

    __test__ = False

    framework: TestFramework = TestFramework.JEST
    coverage: bool = False
    watch: bool = False
    test_name_pattern: Optional[str] = None
    test_path_pattern: Optional[str] = None
    verbose: bool = False
    ci: bool = False
    coverage_threshold: Optional[float] = None
    config_file: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], **overrides: Any) -> TestConfig:
        """Build from the ``test`` section of the configuration file.

        Overrides that are None are ignored.
        """
        values: Dict[str, Any] = {
            "framework": TestFramework(settings.get("framework", TestFramework.JEST.value)),
            "coverage": bool(settings.get("coverage", False)),
            "verbose": bool(settings.get("verbose", False)),
            "coverage_threshold": settings.get("coverageThreshold"),
            "config_file": settings.get("configFile"),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        if values["coverage_threshold"] is not None:
            values["coverage"] = True
        return cls(**values)


@dataclass(frozen=True)
class CoverageSummary:
    """Total coverage percentages of a test run."""

    statements: float = 0.0
    branches: float = 0.0
    functions: float = 0.0
    lines: float = 0.0

    @classmethod
    def from_istanbul(cls, data: Mapping[str, Any]) -> CoverageSummary:
        """Read the ``total`` block of an istanbul ``json-summary`` report."""
        total = data.get("total") or {}

        def pct(metric: str) -> float:
            value = (total.get(metric) or {}).get("pct", 0)
            # istanbul reports "Unknown" when nothing was instrumented
            return float(value) if isinstance(value, (int, float)) else 0.0

        return cls(
            statements=pct("statements"),
            branches=pct("branches"),
            functions=pct("functions"),
            lines=pct("lines"),
        )

    @property
    def lowest(self) -> float:
        return min(self.statements, self.branches, self.functions, self.lines)

    def meets(self, threshold: float) -> bool:
        return self.lowest >= threshold

    def to_dict(self) -> Dict[str, float]:
        return {
            "statements": self.statements,
            "branches": self.branches,
            "functions": self.functions,
            "lines": self.lines,
        }


@dataclass
class TestRunSummary:
    """Normalized outcome of a test run."""

    __test__ = False

    success: bool = False
    total: int = 0
    passed: int = 0
    failed: int = 0
    pending: int = 0
    snapshots_passed: int = 0
    snapshots_failed: int = 0
    coverage: Optional[CoverageSummary] = None
    suites: Optional[List[Dict[str, Any]]] = None
    warnings: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    degraded: bool = False
    duration: float = 0.0

    @classmethod
    def degraded_from(cls, exit_code: int, warning: Optional[str] = None) -> TestRunSummary:
        """Summary for a run whose structured results are unavailable."""
        return cls(
            success=exit_code == 0,
            exit_code=exit_code,
            degraded=True,
            warnings=[warning] if warning else [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "pending": self.pending,
            "snapshotsPassed": self.snapshots_passed,
            "snapshotsFailed": self.snapshots_failed,
            "coverage": self.coverage.to_dict() if self.coverage else None,
            "warnings": list(self.warnings),
            "exitCode": self.exit_code,
            "degraded": self.degraded,
            "duration": round(self.duration, 3),
        }


class TestBackend(abc.ABC):
    """Translates a :class:`TestConfig` for one framework and reads its results."""

    __test__ = False

    framework: TestFramework

    @abc.abstractmethod
    def command(
        self, config: TestConfig, root: pathlib.Path, results_file: pathlib.Path, coverage_dir: pathlib.Path
    ) -> List[str]:
        ...

    @abc.abstractmethod
    def parse(self, data: Dict[str, Any], exit_code: int) -> TestRunSummary:
        ...


def _jest_suites(data: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"name": suite.get("name"), "status": suite.get("status"), "message": suite.get("message") or None}
        for suite in data.get("testResults") or []
    ]


class JestBackend(TestBackend):
    framework = TestFramework.JEST

    def command(
        self, config: TestConfig, root: pathlib.Path, results_file: pathlib.Path, coverage_dir: pathlib.Path
    ) -> List[str]:
        args = ["--passWithNoTests"]
        config_file = root / (config.config_file or "jest.config.js")
        if config_file.is_file():
            args += ["--config", str(config_file)]
        if config.coverage:
            args += [
                "--coverage",
                "--coverageReporters=json-summary",
                "--coverageReporters=text",
                f"--coverageDirectory={coverage_dir}",
            ]
        if config.watch:
            args.append("--watch")
        if config.test_name_pattern:
            args += ["--testNamePattern", config.test_name_pattern]
        if config.test_path_pattern:
            args += ["--testPathPattern", config.test_path_pattern]
        if config.verbose:
            args.append("--verbose")
        if config.ci:
            args += ["--ci", "--runInBand"]
        args += ["--json", "--outputFile", str(results_file)]
        return npx("jest", *args)

    def parse(self, data: Dict[str, Any], exit_code: int) -> TestRunSummary:
        snapshot = data.get("snapshot") or {}
        failed = int(data.get("numFailedTests", 0))
        return TestRunSummary(
            success=exit_code == 0 and failed == 0,
            total=int(data.get("numTotalTests", 0)),
            passed=int(data.get("numPassedTests", 0)),
            failed=failed,
            pending=int(data.get("numPendingTests", 0)),
            snapshots_passed=int(snapshot.get("matched", snapshot.get("passed", 0))),
            snapshots_failed=int(snapshot.get("unmatched", snapshot.get("failed", 0))),
            suites=_jest_suites(data),
            exit_code=exit_code,
        )


class VitestBackend(TestBackend):
    framework = TestFramework.VITEST

    def command(
        self, config: TestConfig, root: pathlib.Path, results_file: pathlib.Path, coverage_dir: pathlib.Path
    ) -> List[str]:
        # "run" disables vitest's default watch mode
        args = [] if config.watch else ["run"]
        if config.test_path_pattern:
            args.append(config.test_path_pattern)
        if config.config_file:
            args += ["--config", str(root / config.config_file)]
        if config.coverage:
            args += [
                "--coverage.enabled",
                "--coverage.reporter=json-summary",
                "--coverage.reporter=text",
                f"--coverage.reportsDirectory={coverage_dir}",
            ]
        if config.test_name_pattern:
            args += ["--testNamePattern", config.test_name_pattern]
        if config.verbose:
            args.append("--reporter=verbose")
        args += ["--reporter=json", f"--outputFile={results_file}", "--passWithNoTests"]
        return npx("vitest", *args)

    def parse(self, data: Dict[str, Any], exit_code: int) -> TestRunSummary:
        # vitest's json reporter follows jest's result layout
        failed = int(data.get("numFailedTests", 0))
        snapshot = data.get("snapshot") or {}
        return TestRunSummary(
            success=exit_code == 0 and failed == 0,
            total=int(data.get("numTotalTests", 0)),
            passed=int(data.get("numPassedTests", 0)),
            failed=failed,
            pending=int(data.get("numPendingTests", 0)) + int(data.get("numTodoTests", 0)),
            snapshots_passed=int(snapshot.get("matched", 0)),
            snapshots_failed=int(snapshot.get("unmatched", 0)),
            suites=_jest_suites(data),
            exit_code=exit_code,
        )


class MochaBackend(TestBackend):
    framework = TestFramework.MOCHA

    def command(
        self, config: TestConfig, root: pathlib.Path, results_file: pathlib.Path, coverage_dir: pathlib.Path
    ) -> List[str]:
        args: List[str] = []
        if config.test_path_pattern:
            args.append(config.test_path_pattern)
        if config.config_file:
            args += ["--config", str(root / config.config_file)]
        if config.test_name_pattern:
            args += ["--grep", config.test_name_pattern]
        if config.watch:
            args.append("--watch")
        if config.ci:
            args.append("--forbid-only")
        args += ["--reporter", "json", "--reporter-option", f"output={results_file}"]

        if config.coverage:
            return npx(
                "nyc",
                "--reporter=json-summary",
                "--reporter=text",
                f"--report-dir={coverage_dir}",
                "mocha",
                *args,
            )
        return npx("mocha", *args)

    def parse(self, data: Dict[str, Any], exit_code: int) -> TestRunSummary:
        stats = data.get("stats") or {}
        failed = int(stats.get("failures", 0))
        suites = [
            {
                "name": test.get("fullTitle") or test.get("title"),
                "status": "failed" if test.get("err") else "passed",
                "message": (test.get("err") or {}).get("message"),
            }
            for test in data.get("tests") or []
        ]
        return TestRunSummary(
            success=exit_code == 0 and failed == 0,
            total=int(stats.get("tests", 0)),
            passed=int(stats.get("passes", 0)),
            failed=failed,
            pending=int(stats.get("pending", 0)),
            suites=suites,
            exit_code=exit_code,
        )


class TestRunner:
    """Runs plugin tests through a framework backend.

    Attributes:
        root: Plugin root the framework runs in
    """

    __test__ = False

    def __init__(self, root: pathlib.Path, on_output: Optional[Callable[[str], None]] = None) -> None:
        self.root = pathlib.Path(root)
        self._on_output = on_output

    @staticmethod
    def _backend_for(framework: TestFramework) -> TestBackend:
        if framework is TestFramework.JEST:
            return JestBackend()
        elif framework is TestFramework.VITEST:
            return VitestBackend()
        elif framework is TestFramework.MOCHA:
            return MochaBackend()
        else:
            assert_never(framework)

    def run(self, config: TestConfig) -> TestRunSummary:
        """Run the tests and summarize the outcome.

        Never raises: a framework that cannot be started yields a failed
        summary with the error in ``warnings``; missing or unreadable result
        files yield a degraded summary.
        """
        started = time.monotonic()
        backend = self._backend_for(config.framework)
        logger.info("Running tests", framework=config.framework.value, root=str(self.root))

        with tempfile.TemporaryDirectory(prefix="caskit-test-") as tmp:
            results_file = pathlib.Path(tmp) / RESULTS_FILENAME
            coverage_dir = pathlib.Path(tmp) / COVERAGE_DIRNAME
            command = backend.command(config, self.root, results_file, coverage_dir)

            try:
                tool = run_tool(command, cwd=self.root, on_line=self._on_output)
            except ProcessSpawnError as e:
                logger.error("Test framework could not be started", framework=config.framework.value, error=str(e))
                return TestRunSummary(success=False, warnings=[str(e)], duration=time.monotonic() - started)

            summary = self._read_results(backend, results_file, tool.returncode)
            if config.coverage:
                summary.coverage = self._read_coverage(coverage_dir / COVERAGE_SUMMARY_FILENAME)

        self._apply_threshold(summary, config)
        summary.duration = time.monotonic() - started
        logger.info(
            "Tests finished",
            success=summary.success,
            total=summary.total,
            failed=summary.failed,
            degraded=summary.degraded,
        )
        return summary

    @staticmethod
    def _read_results(backend: TestBackend, results_file: pathlib.Path, exit_code: int) -> TestRunSummary:
        if not results_file.is_file():
            logger.warning("Test framework wrote no result file", framework=backend.framework.value)
            return TestRunSummary.degraded_from(exit_code)
        try:
            with open(results_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("result file is not a JSON object")
            return backend.parse(data, exit_code)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to parse test results", framework=backend.framework.value, error=str(e))
            return TestRunSummary.degraded_from(exit_code, f"Failed to parse test results: {e}")

    @staticmethod
    def _read_coverage(path: pathlib.Path) -> Optional[CoverageSummary]:
        if not path.is_file():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return CoverageSummary.from_istanbul(json.load(f))
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Failed to parse coverage summary", error=str(e))
            return None

    @staticmethod
    def _apply_threshold(summary: TestRunSummary, config: TestConfig) -> None:
        threshold = config.coverage_threshold
        if threshold is None:
            return
        if summary.coverage is None:
            summary.warnings.append("Coverage threshold set but no coverage summary was produced")
            return
        if not summary.coverage.meets(threshold):
            summary.success = False
            summary.warnings.append(
                f"Coverage {summary.coverage.lowest:.1f}% is below the threshold of {threshold:g}%"
            )
