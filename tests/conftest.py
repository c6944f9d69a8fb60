import pytest
from collections import defaultdict

def pytest_configure(config):
    # Iteration counts and terminal statuses, grouped by test name
    config.solver_stats = defaultdict(list)
    config.solver_statuses = defaultdict(lambda: defaultdict(int))

@pytest.fixture
def record_iterations(request):
    """
    Fixture that records the iterations and status of a solve, grouped by the
    test function name.
    """
    # .originalname groups parametrized tests (e.g. 'test_solve[dense-42]' under 'test_solve')
    test_name = request.node.originalname or request.node.name

    def _record(info):
        request.config.solver_stats[test_name].append(info.iter)
        request.config.solver_statuses[test_name][info.status.value] += 1
    return _record

def pytest_terminal_summary(terminalreporter, exitstatus, config):
    stats = config.solver_stats
    if not stats:
        return

    terminalreporter.section("PIPQP Solver Iteration Statistics")

    fmt = "{:<28} | {:<6} | {:<8} | {:<8} | {}"
    terminalreporter.write_line(
        fmt.format("Test Name", "Count", "Avg Iter", "Max Iter", "Statuses"))
    terminalreporter.write_line("-" * 80)

    all_iterations = []

    for name, values in sorted(stats.items()):
        all_iterations.extend(values)
        avg = sum(values) / len(values)
        statuses = ", ".join(
            f"{status}={count}"
            for status, count in sorted(config.solver_statuses[name].items()))
        terminalreporter.write_line(
            fmt.format(name, len(values), f"{avg:.2f}", max(values), statuses))

    terminalreporter.write_line("-" * 80)
    total_avg = sum(all_iterations) / len(all_iterations)
    terminalreporter.write_line(
        fmt.format("AGGREGATE", len(all_iterations), f"{total_avg:.2f}",
                   max(all_iterations), ""))
