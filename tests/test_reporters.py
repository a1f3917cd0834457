import json

from pipeinfra.models.resource import ResourceGroupRef
from pipeinfra.models.result import Outcome, ReconciliationResult
from pipeinfra.reporters import json_reporter, markdown

SCOPE = ResourceGroupRef("test-rg", "eastus")


def _results():
    return [
        ReconciliationResult(
            key="acr", kind="registry", name="myacr01", outcome=Outcome.CREATED,
            outputs={"login_server": "myacr01.azurecr.io", "username": "myacr01", "password": "pw1"},
        ),
        ReconciliationResult(
            key="vault", kind="vault", name="kv", outcome=Outcome.FAILED, detail="quota exceeded",
        ),
        ReconciliationResult(
            key="secret", kind="secret", name="JWT", outcome=Outcome.BLOCKED,
            detail="blocked by failed 'vault'",
        ),
    ]


def test_json_report_summary():
    report = json.loads(json_reporter.build_report("create", SCOPE, _results(), {"x": 1}))
    assert report["summary"]["Created"] == 1
    assert report["summary"]["Failed"] == 1
    assert report["summary"]["Blocked"] == 1
    assert report["results"][1]["detail"] == "quota exceeded"
    assert report["outputs"] == {"x": 1}


def test_collect_credentials_skips_missing_sections():
    sections = markdown.collect_credentials(_results())
    assert [heading for heading, _ in sections] == ["Azure Container Registry"]
    assert ("Password", "pw1") in sections[0][1]


def test_ascii_mode_markdown():
    """Test that ASCII mode in Markdown reporter works."""
    report_emoji = markdown.build_report("create", SCOPE, _results(), ascii_mode=False)
    assert "❌ Failed" in report_emoji

    report_ascii = markdown.build_report("create", SCOPE, _results(), ascii_mode=True)
    assert "[x] Failed" in report_ascii
    assert "[!] Blocked" in report_ascii
    assert "❌" not in report_ascii


def test_delete_report_has_no_credentials_or_next_steps():
    results = [ReconciliationResult(key="kv", kind="vault", name="kv", outcome=Outcome.DELETED)]
    report = markdown.build_report("delete", SCOPE, results)
    assert "## Credentials" not in report
    assert "## Next Steps" not in report
    assert "| `kv` | vault | kv |" in report


def test_create_report_lists_next_steps():
    report = markdown.build_report("create", SCOPE, _results())
    assert "## Next Steps" in report
    assert "1. Update azure-pipelines.yml" in report
