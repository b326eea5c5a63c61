import pytest

from stagecraft import channels
from stagecraft.stages import Stage, StageCatalog, default_catalog


def test_default_catalog_order():
    catalog = default_catalog()
    assert catalog.names == [
        "research",
        "critique",
        "backend",
        "frontend",
        "qa",
        "analytics",
        "deployment",
    ]
    assert catalog.implementation_index == 2
    assert catalog.last.name == "deployment"


def test_lookup_helpers():
    catalog = default_catalog()
    assert catalog.index_of("QA") == 4
    assert catalog.find("missing") is None
    assert catalog.by_channel("frontend") == 3
    assert catalog.by_channel("nope") is None
    with pytest.raises(KeyError):
        catalog.index_of("missing")


def test_catalog_rejects_bad_definitions():
    with pytest.raises(ValueError):
        StageCatalog([], implementation_stage="build")
    with pytest.raises(ValueError):
        StageCatalog(
            [Stage(name="build", channel="a"), Stage(name="build", channel="b")],
            implementation_stage="build",
        )


def test_custom_catalog_drives_channels():
    catalog = StageCatalog(
        [Stage(name="draft", channel="drafts"), Stage(name="build", channel="builds")],
        implementation_stage="build",
    )
    assert catalog.implementation_index == 1
    assert channels.deliverable(catalog[0], "REQ-1") == "deliverables.drafts.REQ-1"
    assert channels.work(catalog[1]) == "work.build"


def test_channel_helpers():
    assert channels.parse_deliverable("deliverables.qa.REQ-1-SUB1-5") == ("qa", "REQ-1-SUB1-5")
    assert channels.parse_deliverable("workflows.state.REQ-1") is None
    assert channels.tail("workflows.state.REQ-7", channels.WORKFLOW_STATE_PATTERN) == "REQ-7"
    assert channels.tail("workflows.state.", channels.WORKFLOW_STATE_PATTERN) is None
