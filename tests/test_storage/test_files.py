"""Tests specific to the flat-file store."""

from __future__ import annotations

import pytest
import yaml

from flowforge.core.run import WorkflowRun
from flowforge.config.loader import DefinitionError, to_document
from flowforge.services.definitions import DefinitionService
from flowforge.storage.base import CorruptRecordError, RunFilter
from flowforge.storage.files import FileWorkflowStore

from helpers import agent_step, make_definition


@pytest.fixture
def file_store(tmp_path):
    return FileWorkflowStore(tmp_path)


class TestFileLayout:
    @pytest.mark.asyncio
    async def test_definitions_are_yaml(self, file_store, tmp_path):
        await file_store.save_definition("feature", {"id": "feature", "name": "Feature"})

        path = tmp_path / "workflows" / "feature.yml"
        assert yaml.safe_load(path.read_text()) == {"id": "feature", "name": "Feature"}

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, file_store, tmp_path):
        await file_store.save_definition("feature", {"id": "feature"})
        await file_store.save_acl("feature", {"owners": []})

        leftovers = [p.name for p in (tmp_path / "workflows").iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_hand_written_yaml_extension(self, file_store, tmp_path):
        (tmp_path / "workflows" / "legacy.yaml").write_text("id: legacy\nname: Legacy\n")

        assert await file_store.list_definition_ids() == ["legacy"]
        assert (await file_store.load_definition("legacy"))["name"] == "Legacy"

        await file_store.save_definition("legacy", {"id": "legacy", "name": "Renamed"})
        assert not (tmp_path / "workflows" / "legacy.yaml").exists()
        assert (await file_store.load_definition("legacy"))["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_hidden_files_not_listed(self, file_store):
        await file_store.save_acl("feature", {"owners": []})
        await file_store.append_audit({"action": "created"})
        assert await file_store.list_definition_ids() == []


class TestCorruptRecords:
    @pytest.mark.asyncio
    async def test_invalid_yaml(self, file_store, tmp_path):
        (tmp_path / "workflows" / "broken.yml").write_text("id: [unclosed\n")

        with pytest.raises(CorruptRecordError, match="not valid YAML"):
            await file_store.load_definition("broken")

    @pytest.mark.asyncio
    async def test_not_a_mapping(self, file_store, tmp_path):
        (tmp_path / "workflows" / "list.yml").write_text("- a\n- b\n")

        with pytest.raises(CorruptRecordError, match="must be a YAML mapping"):
            await file_store.load_definition("list")

    @pytest.mark.asyncio
    async def test_invalid_utf8(self, file_store, tmp_path):
        (tmp_path / "workflows" / "bad.yml").write_bytes(b"id: \xff\xfe bad\n")

        with pytest.raises(CorruptRecordError, match="not valid UTF-8"):
            await file_store.load_definition("bad")

    @pytest.mark.asyncio
    async def test_undecodable_definition_skipped_in_listing(self, file_store, tmp_path):
        definitions = DefinitionService(file_store)
        await definitions.save(make_definition([agent_step("plan")], workflow_id="good"))
        (tmp_path / "workflows" / "bad.yml").write_bytes(b"id: \xff\xfe bad\n")

        valid, invalid = await definitions.list_with_errors()

        assert [d.id for d in valid] == ["good"]
        assert list(invalid) == ["bad"]

    @pytest.mark.asyncio
    async def test_truncated_run_skipped_in_listing(self, file_store, tmp_path):
        run = WorkflowRun.create(make_definition([agent_step("plan")]))
        await file_store.save_run(run)
        (tmp_path / "runs" / "run_corrupt.json").write_text("{truncated")

        assert [r.id for r in await file_store.list_runs()] == [run.id]
        assert [r.id for r in await file_store.list_runs(RunFilter(workflow_id="wf"))] == [run.id]

    @pytest.mark.asyncio
    async def test_truncated_run_load_raises(self, file_store, tmp_path):
        (tmp_path / "runs" / "run_corrupt.json").write_text("{truncated")

        with pytest.raises(CorruptRecordError, match="run_corrupt.json"):
            await file_store.load_run("run_corrupt")

    @pytest.mark.asyncio
    async def test_run_with_wrong_shape_skipped(self, file_store, tmp_path):
        (tmp_path / "runs" / "run_list.json").write_text("[1, 2]")
        assert await file_store.list_runs() == []


class TestUnsafeIds:
    @pytest.mark.asyncio
    async def test_definition_cannot_escape_data_dir(self, tmp_path):
        definitions = DefinitionService(FileWorkflowStore(tmp_path / "data"))
        document = to_document(make_definition([agent_step("plan")], workflow_id="placeholder"))
        document["id"] = "../../escaped"

        with pytest.raises(DefinitionError, match="workflow id"):
            await definitions.create(document)

        assert not (tmp_path / "escaped.yml").exists()
        assert list(tmp_path.rglob("escaped*")) == []

    @pytest.mark.asyncio
    async def test_store_refuses_unsafe_names(self, file_store, tmp_path):
        (tmp_path / "outside.yml").write_text("id: outside\n")

        with pytest.raises(ValueError, match="cannot be used as a file name"):
            await file_store.save_definition("../outside", {"id": "x"})
        assert await file_store.load_definition("../outside") is None
        assert await file_store.delete_definition("../outside") is False
        assert (tmp_path / "outside.yml").exists()
        assert await file_store.load_run("../outside") is None
