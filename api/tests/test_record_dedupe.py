from datetime import datetime, timedelta, timezone

from firmbook.services.dedupe import (
    compute_dedup_key,
    dedup_lookups,
    merge_record_fields,
    plan_company_merge,
    prepare_incoming_record,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_dedup_key_priority() -> None:
    full = {
        "email": " Jane@Acme.io ",
        "executive_linkedin": "https://linkedin.com/in/jane",
        "domain": "acme.io",
        "executive_name": "Jane Doe",
    }
    assert compute_dedup_key(full).kind == "email"
    assert compute_dedup_key(full).key == "jane@acme.io"

    no_email = {**full, "email": ""}
    assert compute_dedup_key(no_email).kind == "linkedin"

    domain_exec = {**no_email, "executive_linkedin": ""}
    key = compute_dedup_key(domain_exec)
    assert key.kind == "domain_exec"
    assert key.key == "acme.io::jane doe"

    assert compute_dedup_key({"domain": "acme.io"}).kind == "none"
    assert compute_dedup_key({}).key == ""


def test_dedup_lookups_follow_priority_and_skip_empty_identities() -> None:
    lookups = dedup_lookups({"email": "JANE@acme.io", "domain": "acme.io", "executive_name": "Jane"})
    assert lookups == [("email", ("jane@acme.io",)), ("domain_exec", ("acme.io", "jane"))]
    assert dedup_lookups({"company_name": "Acme"}) == []


def test_prepare_incoming_record_clears_non_domain_values() -> None:
    prepared = prepare_incoming_record(
        {"company_name": "  Acme ", "domain": "Acme Consulting", "exec_search_status": "YES", "email": None}
    )
    assert prepared["company_name"] == "Acme"
    assert prepared["domain"] == ""
    assert prepared["exec_search_status"] == "yes"
    assert prepared["email"] == ""
    assert prepared["email_template"] == ""


def test_prepare_incoming_record_gives_linkedin_urls_one_form() -> None:
    bare = prepare_incoming_record({"executive_linkedin": " linkedin.com/in/jane "})
    full = prepare_incoming_record({"executive_linkedin": "https://linkedin.com/in/jane"})

    assert bare["executive_linkedin"] == "https://linkedin.com/in/jane"
    assert dedup_lookups(bare) == dedup_lookups(full) == [("linkedin", ("https://linkedin.com/in/jane",))]


def test_merge_prefers_existing_non_empty_values() -> None:
    existing = {"company_name": "Acme", "domain": "", "firm_niche": "  ", "email": "jane@acme.io"}
    incoming = {"company_name": "Acme Corp", "domain": "acme.io", "firm_niche": "fintech", "email": "other@acme.io"}

    merged = merge_record_fields(existing, incoming)

    assert merged["company_name"] == "Acme"
    assert merged["domain"] == "acme.io"
    assert merged["firm_niche"] == "fintech"
    assert merged["email"] == "jane@acme.io"
    assert merged["executive_role"] == ""


def test_plan_company_merge_needs_two_companies() -> None:
    assert plan_company_merge("acme.io", []) is None
    assert plan_company_merge("acme.io", [{"id": "c1", "updated_at": NOW, "created_at": NOW}]) is None


def test_plan_company_merge_picks_most_recently_updated_company() -> None:
    older = {
        "id": "c-old",
        "company_name": "Acme Holdings",
        "domain": "acme.io",
        "normalized_name": "acme holdings",
        "created_at": NOW - timedelta(days=10),
        "updated_at": NOW - timedelta(days=5),
    }
    newer = {
        "id": "c-new",
        "company_name": "",
        "domain": "acme.io",
        "normalized_name": "",
        "created_at": NOW - timedelta(days=20),
        "updated_at": NOW,
    }

    plan = plan_company_merge("acme.io", [older, newer])

    assert plan is not None
    assert plan.canonical["id"] == "c-new"
    assert plan.dupe_ids == ["c-old"]
    assert plan.participant_ids == ["c-new", "c-old"]
    assert plan.merged_company_name == "Acme Holdings"
    assert plan.merged_normalized_name == "acme holdings"
    after = plan.after()
    assert after["canonical"]["company_name"] == "Acme Holdings"
    assert after["canonical"]["state"] == "live"
    assert [(dupe["id"], dupe["state"]) for dupe in after["dupes"]] == [("c-old", "tombstoned")]
    assert plan.before()["canonical"]["updated_at"] == NOW.isoformat()
    assert plan.before()["dupes"][0]["state"] == "live"


def test_plan_company_merge_breaks_ties_by_creation_time() -> None:
    first = {"id": "c1", "company_name": "A", "created_at": NOW - timedelta(days=1), "updated_at": NOW}
    second = {"id": "c2", "company_name": "B", "created_at": NOW, "updated_at": NOW}
    missing = {"id": "c3", "company_name": "C", "created_at": None, "updated_at": None}

    plan = plan_company_merge("acme.io", [first, missing, second])

    assert plan is not None
    assert plan.canonical["id"] == "c2"
    assert plan.dupe_ids == ["c1", "c3"]
    assert plan.merged_normalized_name == "b"
