"""Unit tests for secscan.services.normalize: severity rules, ecosystem names and reference parsing."""

import unittest

from secscan.services.normalize import (
    canonical_ecosystem,
    find_cve_reference,
    highest_severity,
    join_values,
    map_static_severity,
    normalize_severity,
)


class TestStaticSeverityMapping(unittest.TestCase):
    """error -> high, warning -> medium, info -> low, anything else -> medium."""

    def test_known_levels(self) -> None:
        self.assertEqual(map_static_severity("ERROR"), "high")
        self.assertEqual(map_static_severity("WARNING"), "medium")
        self.assertEqual(map_static_severity("INFO"), "low")

    def test_lowercase_levels(self) -> None:
        self.assertEqual(map_static_severity("error"), "high")
        self.assertEqual(map_static_severity("info"), "low")

    def test_unknown_and_missing_default_to_medium(self) -> None:
        for value in (None, "", "CRITICAL", "INVENTORY", "EXPERIMENT", 3):
            with self.subTest(value=value):
                self.assertEqual(map_static_severity(value), "medium")


class TestNormalizeSeverity(unittest.TestCase):
    """Scanner severities are lower-cased; missing or unrecognized values become low."""

    def test_lowercases(self) -> None:
        self.assertEqual(normalize_severity("HIGH"), "high")
        self.assertEqual(normalize_severity("Critical"), "critical")
        self.assertEqual(normalize_severity("MEDIUM"), "medium")

    def test_missing_is_low(self) -> None:
        self.assertEqual(normalize_severity(None), "low")
        self.assertEqual(normalize_severity("  "), "low")

    def test_unknown_is_low(self) -> None:
        self.assertEqual(normalize_severity("UNKNOWN"), "low")


class TestCanonicalEcosystem(unittest.TestCase):
    """Package-manager names collapse onto their registry."""

    def test_js_package_managers_share_npm(self) -> None:
        self.assertEqual(canonical_ecosystem("npm"), canonical_ecosystem("yarn"))
        self.assertEqual(canonical_ecosystem("pnpm"), "npm")

    def test_python_package_managers_share_pypi(self) -> None:
        for raw in ("pip", "pipenv", "poetry", "uv"):
            with self.subTest(raw=raw):
                self.assertEqual(canonical_ecosystem(raw), "pypi")

    def test_other_registries(self) -> None:
        self.assertEqual(canonical_ecosystem("gradle"), "maven")
        self.assertEqual(canonical_ecosystem("cargo"), "crates.io")
        self.assertEqual(canonical_ecosystem("gomod"), "go")
        self.assertEqual(canonical_ecosystem("bundler"), "rubygems")

    def test_case_insensitive(self) -> None:
        self.assertEqual(canonical_ecosystem("Yarn"), "npm")

    def test_unrecognized_passes_through_unchanged(self) -> None:
        self.assertEqual(canonical_ecosystem("Alpine"), "Alpine")

    def test_missing_is_unknown(self) -> None:
        self.assertEqual(canonical_ecosystem(None), "unknown")


class TestFindCveReference(unittest.TestCase):
    """CVE ids come from the first reference mentioning CVE."""

    def test_extracts_id_from_url(self) -> None:
        refs = [
            "https://owasp.org/Top10/A03_2021-Injection",
            "https://nvd.nist.gov/vuln/detail/CVE-2022-22965",
        ]
        self.assertEqual(find_cve_reference(refs), "CVE-2022-22965")

    def test_reference_without_wellformed_id_is_kept(self) -> None:
        self.assertEqual(find_cve_reference(["see CVE list"]), "see CVE list")

    def test_no_cve(self) -> None:
        self.assertIsNone(find_cve_reference(["https://example.com"]))
        self.assertIsNone(find_cve_reference([]))


class TestJoinValues(unittest.TestCase):
    def test_list_joined_with_comma(self) -> None:
        self.assertEqual(join_values(["CWE-79", "CWE-80"]), "CWE-79, CWE-80")

    def test_string_passthrough(self) -> None:
        self.assertEqual(join_values("MIT"), "MIT")

    def test_empty(self) -> None:
        self.assertIsNone(join_values([]))
        self.assertIsNone(join_values(None))


class TestHighestSeverity(unittest.TestCase):
    def test_picks_worst(self) -> None:
        self.assertEqual(highest_severity(["low", "critical", "medium"]), "critical")

    def test_default_when_empty(self) -> None:
        self.assertEqual(highest_severity([]), "low")


if __name__ == "__main__":
    unittest.main()
