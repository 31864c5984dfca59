"""
Issue records shared by the optimizer and the stock planner.

An issue is a plain dict {level, code, message[, details]}. 'error' makes the
owning formula, plan or target infeasible, 'warning' is advisory.
"""
from typing import Dict, Any, List, Optional


def make_issue(level: str, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    issue = {'level': level, 'code': code, 'message': message}
    if details is not None:
        issue['details'] = details
    return issue


def error_issues(issues: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [i for i in issues if i['level'] == 'error']


def warning_issues(issues: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [i for i in issues if i['level'] != 'error']
