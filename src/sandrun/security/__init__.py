"""Static risk scanning for untrusted code."""

from sandrun.security.js_syntax import SyntaxProblem, check_syntax, is_valid_syntax
from sandrun.security.patterns import (
    DANGEROUS_MODULES,
    HEURISTIC_RULES,
    SUSPICIOUS_RULES,
    PatternRule,
    module_base_name,
    rule,
)
from sandrun.security.risk_scanner import RiskScanner, scan_code

__all__ = [
    "DANGEROUS_MODULES",
    "HEURISTIC_RULES",
    "PatternRule",
    "RiskScanner",
    "SUSPICIOUS_RULES",
    "SyntaxProblem",
    "check_syntax",
    "is_valid_syntax",
    "module_base_name",
    "rule",
    "scan_code",
]
