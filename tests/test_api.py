"""API tests for the workbook routes, run in-process with TestClient."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes.workbooks import XLSX_MEDIA_TYPE, router
from services.edit_session import SessionStore, get_session_store
from services.errors import TranslationFailure
from services.instruction_translator import TranslationResult, get_translator
from services.sheet_engine.loader import load_sheet
from services.sheet_engine.package import load_workbook
from services.sheet_engine.schemas import CellUpdate


class StubTranslator:
    def __init__(self):
        self.result = TranslationResult()
        self.error = None

    async def translate(self, snapshot, instruction):
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def translator():
    return StubTranslator()


@pytest.fixture
def client(settings, translator):
    app = FastAPI()
    app.include_router(router)
    store = SessionStore(settings)
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_translator] = lambda: translator
    with TestClient(app) as c:
        yield c


@pytest.fixture
def workbook_id(client, quote_xlsx):
    response = client.post("/workbooks/", files={"file": ("quote.xlsx", quote_xlsx, XLSX_MEDIA_TYPE)})
    assert response.status_code == 200
    return response.json()["id"]


class TestUpload:

    def test_upload(self, client, quote_xlsx):
        response = client.post("/workbooks/", files={"file": ("quote.xlsx", quote_xlsx, XLSX_MEDIA_TYPE)})
        assert response.status_code == 200
        body = response.json()
        assert body["active_sheet"] == "Quote"
        assert body["sheets"] == ["Quote", "Details"]
        assert body["source_format"] == "xlsx"
        assert body["preview"]["rows"][1][1]["value"] == 3

    def test_unsupported_extension(self, client, quote_xlsx):
        response = client.post("/workbooks/", files={"file": ("quote.csv", quote_xlsx, "text/csv")})
        assert response.status_code == 400

    def test_corrupt_file(self, client):
        response = client.post("/workbooks/", files={"file": ("broken.xlsx", b"not a zip", XLSX_MEDIA_TYPE)})
        assert response.status_code == 400


class TestSession:

    def test_get(self, client, workbook_id):
        response = client.get(f"/workbooks/{workbook_id}", params={"max_rows": 1})
        assert response.status_code == 200
        assert len(response.json()["preview"]["rows"]) == 1

    def test_unknown_id(self, client):
        assert client.get("/workbooks/missing").status_code == 404
        assert client.delete("/workbooks/missing").status_code == 404
        assert client.post("/workbooks/missing/export").status_code == 404

    def test_select_sheet(self, client, workbook_id):
        response = client.put(f"/workbooks/{workbook_id}/active-sheet", json={"sheet": "Details"})
        assert response.status_code == 200
        assert response.json()["active_sheet"] == "Details"
        assert response.json()["preview"]["merges"] == ["A1:B1"]

        response = client.put(f"/workbooks/{workbook_id}/active-sheet", json={"sheet": "Nope"})
        assert response.status_code == 404

    def test_delete(self, client, workbook_id):
        assert client.delete(f"/workbooks/{workbook_id}").json() == {"deleted": workbook_id}
        assert client.get(f"/workbooks/{workbook_id}").status_code == 404


class TestInstructions:

    def test_applied(self, client, workbook_id, translator):
        translator.result = TranslationResult(
            updates=[CellUpdate(address="B2", value=10)],
            explanation="Apple quantity set to 10",
        )
        response = client.post(f"/workbooks/{workbook_id}/instructions", json={"instruction": "Set apples to 10"})
        assert response.status_code == 200
        body = response.json()
        assert body["applied"] is True
        assert body["explanation"] == "Apple quantity set to 10"
        assert body["entry"]["changes"][0]["address"] == "B2"
        assert body["preview"]["rows"][1][1]["value"] == 10
        assert body["workbook"]["history_count"] == 1

    def test_empty_result(self, client, workbook_id, translator):
        translator.result = TranslationResult(updates=[], explanation="No such column")
        response = client.post(f"/workbooks/{workbook_id}/instructions", json={"instruction": "Set colour"})
        assert response.status_code == 200
        assert response.json()["applied"] is False
        assert response.json()["explanation"] == "No such column"

    def test_translation_failure(self, client, workbook_id, translator):
        translator.error = TranslationFailure("model unavailable")
        response = client.post(f"/workbooks/{workbook_id}/instructions", json={"instruction": "Set apples to 10"})
        assert response.status_code == 502
        assert "model unavailable" in response.json()["detail"]

    def test_blank_instruction_rejected(self, client, workbook_id):
        response = client.post(f"/workbooks/{workbook_id}/instructions", json={"instruction": ""})
        assert response.status_code == 422


class TestCellsAndHistory:

    def test_edit_history_undo(self, client, workbook_id):
        response = client.post(
            f"/workbooks/{workbook_id}/cells",
            json={"updates": [{"address": "C2", "value": 1.75}], "note": "Price update"},
        )
        assert response.status_code == 200
        assert response.json()["applied"] is True

        history = client.get(f"/workbooks/{workbook_id}/history").json()
        assert history["limit"] == 10
        assert [e["instruction"] for e in history["entries"]] == ["Price update"]

        undo = client.post(f"/workbooks/{workbook_id}/history/undo").json()
        assert undo["undone"]["instruction"] == "Price update"
        assert undo["preview"]["rows"][1][2]["value"] == 1.5
        assert client.get(f"/workbooks/{workbook_id}/history").json()["entries"] == []

        assert client.post(f"/workbooks/{workbook_id}/history/undo").json()["undone"] is None

    def test_out_of_range_cells(self, client, workbook_id):
        response = client.post(f"/workbooks/{workbook_id}/cells", json={"updates": [{"address": "Z100", "value": 1}]})
        assert response.status_code == 200
        assert response.json()["applied"] is False


class TestExport:

    def test_export(self, client, workbook_id):
        client.post(f"/workbooks/{workbook_id}/cells", json={"updates": [{"address": "B3", "value": 7}]})
        response = client.post(f"/workbooks/{workbook_id}/export")
        assert response.status_code == 200
        assert response.headers["content-type"] == XLSX_MEDIA_TYPE
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="quote_edited_')
        assert "filename*=UTF-8''quote_edited_" in disposition

        sheet = load_sheet(load_workbook(response.content, "quote.xlsx"), "Quote")
        assert sheet.grid.cell_at(2, 1).value == 7
        assert sheet.styles[(0, 1)].bold is True


def test_app_root(monkeypatch):
    monkeypatch.setenv("DISABLE_RATE_LIMIT", "1")
    import main

    response = TestClient(main.app).get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "translator_available" in response.json()
