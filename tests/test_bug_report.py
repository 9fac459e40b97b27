"""Tests for nvidia-bug-report.sh."""


def test_default_report(run):
    result = run("nvidia-bug-report.sh")
    assert result.exit_code == 0
    assert "create the file '/tmp/nvidia-bug-report.log.gz'" in result.output
    assert "  - dmesg" in result.output
    assert "  Driver Version: 535.129.03" in result.output
    assert "  Total GPUs: 8" in result.output
    assert "  OK: 8" in result.output
    assert "  No XID errors recorded" in result.output
    assert "Report written to: /tmp/nvidia-bug-report.log.gz (3.2 MB)" in result.output


def test_report_includes_xid_history(run, scenario_context):
    scenario_context.add_xid_error("dgx-00", 3, 79)
    output = run("nvidia-bug-report.sh").output
    assert "  Critical: 1" in output
    assert "  GPU 3 (PCI:0000:4E:00): Xid 79 [Critical] GPU has fallen off the bus" in output
    assert "(3.6 MB)" in output


def test_output_file_options(run):
    assert "Report written to: /tmp/r.log.gz" in run("nvidia-bug-report.sh -o /tmp/r.log.gz").output
    output = run("nvidia-bug-report.sh --no-compress").output
    assert "Report written to: /tmp/nvidia-bug-report.log (20.8 MB)" in output


def test_verbose_lists_steps(run):
    output = run("nvidia-bug-report.sh --verbose").output
    assert "  [1/6] Collecting nvidia-smi..." in output
    assert "  [6/6] Collecting DCGM diagnostics state..." in output


def test_version(run):
    assert run("nvidia-bug-report.sh --version").output == "nvidia-bug-report.sh Version: 535.129.03\n"
