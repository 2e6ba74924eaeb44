import pytest

from targetgraph.models.request import BuildRequest
from targetgraph.services.session import BuildSession, TargetRef, classify_health


@pytest.mark.parametrize(
    "non_empty,degraded,expected",
    [(0, 0, "red"), (0, 3, "red"), (2, 1, "yellow"), (1, 0, "green")],
)
def test_classify_health(non_empty, degraded, expected):
    assert classify_health(non_empty, degraded) == expected


def test_source_health_keeps_the_worst_level():
    session = BuildSession(request=BuildRequest(query="asthma"))

    session.record_health("opentargets", "red")
    session.record_health("opentargets", "green")
    session.record_health("reactome", "green")
    session.record_health("reactome", "yellow")
    session.record_health("reactome", "green")

    assert session.source_health == {"opentargets": "red", "reactome": "yellow"}


def test_target_lookup_ignores_case():
    session = BuildSession(request=BuildRequest(query="asthma"))
    session.targets.append(TargetRef("target:ENSG00000169194", "ENSG00000169194", "IL13", 0.7))

    assert session.target_by_symbol(" il13 ").primary_id == "ENSG00000169194"
    assert session.target_by_symbol("IL4") is None
