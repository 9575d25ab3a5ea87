import asyncio
import json

import pytest

from conftest import ETAGI_LINKS, RULES, etagi_target, make_runtime, serve_etagi
from estate_harvest.admin import cli
from estate_harvest.admin.status import load_manifests, summarise_runs
from estate_harvest.orchestrator.cycle import run_cycle


@pytest.fixture()
def prepared_run(tmp_path, fake_site):
    serve_etagi(fake_site)
    fake_site.always_fail.add(ETAGI_LINKS[4])
    runtime = make_runtime(tmp_path, fake_site)
    report = asyncio.run(run_cycle(etagi_target(page_limit=2), runtime))
    csv_path = tmp_path / "targets.csv"
    csv_path.write_text(
        "site,listing_type,url_template,page_limit,rules_path,enabled\n"
        f"etagi,buy,https://almaty.etagi.com/realty/?page={{page}},2,{RULES / 'etagi.yaml'},true\n"
        f"krisha,rent,https://krisha.kz/arenda/kvartiry/almaty/?page={{page}},3,{RULES / 'krisha.yaml'},true\n",
        encoding="utf-8",
    )
    return runtime, report, csv_path


def test_admin_status(prepared_run, capsys):
    runtime, report, csv_path = prepared_run
    capsys.readouterr()
    args = cli.build_parser().parse_args([
        "status",
        "--targets",
        str(csv_path),
        "--queues",
        str(runtime.layout.queues),
        "--manifests",
        str(runtime.layout.manifests),
    ])
    cli.cmd_status(args)
    output = json.loads(capsys.readouterr().out)
    by_target = {row["target"]: row for row in output}
    assert by_target["etagi/buy"]["items"]["dead"] == 1
    assert by_target["etagi/buy"]["pages"]["waiting"] == 0
    assert by_target["etagi/buy"]["last_run"]["cycle_id"] == report.cycle_id
    assert by_target["etagi/buy"]["last_run"]["listings_upserted"] == 4
    assert by_target["krisha/rent"]["last_run"] is None


def test_admin_inspect_dead(prepared_run, capsys):
    runtime, _, _ = prepared_run
    capsys.readouterr()
    args = cli.build_parser().parse_args(["inspect-dead", "--queues", str(runtime.layout.queues)])
    cli.cmd_inspect_dead(args)
    output = json.loads(capsys.readouterr().out)
    assert [row["payload"]["link"] for row in output] == [ETAGI_LINKS[4]]
    assert output[0]["queue"] == "etagi-buy-items"
    assert output[0]["attempts"] == 3


def test_admin_inspect_dead_filters_by_queue(prepared_run, capsys):
    runtime, _, _ = prepared_run
    capsys.readouterr()
    args = cli.build_parser().parse_args(
        ["inspect-dead", "--queues", str(runtime.layout.queues), "--queue", "etagi-buy-pages"]
    )
    cli.cmd_inspect_dead(args)
    assert json.loads(capsys.readouterr().out) == []


def test_admin_explain_matches_target(prepared_run, capsys):
    _, _, csv_path = prepared_run
    capsys.readouterr()
    args = cli.build_parser().parse_args([
        "explain",
        "--url",
        "https://krisha.kz/arenda/kvartiry/almaty/?page=7",
        "--targets",
        str(csv_path),
    ])
    cli.cmd_explain(args)
    output = json.loads(capsys.readouterr().out)
    assert output["matched"] is True
    assert output["target"] == "krisha/rent"
    assert output["page_limit"] == 3
    assert output["rules_path"].endswith("krisha.yaml")


def test_admin_explain_unknown_host(prepared_run, capsys):
    _, _, csv_path = prepared_run
    capsys.readouterr()
    args = cli.build_parser().parse_args(["explain", "--url", "https://olx.kz/nedvizhimost/", "--targets", str(csv_path)])
    cli.cmd_explain(args)
    assert json.loads(capsys.readouterr().out) == {"url": "https://olx.kz/nedvizhimost/", "matched": False}


def test_summarise_runs_keeps_latest_manifest_per_target(tmp_path):
    manifests = tmp_path / "manifests"
    manifests.mkdir()
    (manifests / "run-etagi-buy-20240501T000000000000.json").write_text(
        json.dumps({"cycle_id": "old", "target": "etagi/buy", "status": "failed"}), encoding="utf-8"
    )
    (manifests / "run-etagi-buy-20240502T000000000000.json").write_text(
        json.dumps({"cycle_id": "new", "target": "etagi/buy", "status": "completed", "dead_jobs": [{}]}),
        encoding="utf-8",
    )
    (manifests / "run-broken.json").write_text("{not json", encoding="utf-8")

    assert len(load_manifests(manifests)) == 2
    runs = summarise_runs(manifests)
    assert runs["etagi/buy"]["cycle_id"] == "new"
    assert runs["etagi/buy"]["dead_jobs"] == 1
    assert summarise_runs(tmp_path / "missing") == {}
