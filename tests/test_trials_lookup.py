import pytest
import requests

from oncocheck.trials import TrialsError, normalize_studies, search_trials


def _study(nct, title, status, interventions=()):
    return {"protocolSection": {
        "identificationModule": {"nctId": nct, "briefTitle": title},
        "statusModule": {"overallStatus": status, "lastUpdateSubmitDate": "2024-01-02"},
        "conditionsModule": {"conditions": ["Gastric Cancer", "a", "b", "c", "d"]},
        "armsInterventionsModule": {"interventions": [{"interventionName": n} for n in interventions]},
    }}


PAYLOAD = {"studies": [
    _study("NCT1", "FLOT trial", "RECRUITING", ["FLOT", " ", "Surgery"]),
    _study("NCT2", "Old trial", "COMPLETED"),
    _study("", "No id", "RECRUITING"),
]}


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload, self.status_code = payload, status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response):
        self.response, self.calls = response, []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        return self.response


def test_normalize_studies_shapes_items():
    items = normalize_studies(PAYLOAD)
    assert [i.nctId for i in items] == ["NCT1", "NCT2"]
    assert items[0].interventions == ["FLOT", "Surgery"]
    assert len(items[0].conditions) == 4
    assert normalize_studies({"studies": "x"}) == [] and normalize_studies(None) == []


def test_live_then_cache(store):
    session = FakeSession(FakeResponse(PAYLOAD))
    first = search_trials(store, "  gastric cancer ", recruiting=True, page_size=40, session=session)
    assert first.source == "live"
    assert [i.nctId for i in first.items] == ["NCT1"]
    call = session.calls[0]
    assert call["params"] == {"query.cond": "gastric cancer", "pageSize": 25, "format": "json"}
    assert call["headers"]["User-Agent"] == "Oncology-MVP/1.0"

    second = search_trials(store, "gastric cancer", recruiting=True, page_size=40, session=session)
    assert second.source == "cache" and len(session.calls) == 1
    assert [i.nctId for i in second.items] == ["NCT1"]
    assert second.fetched_at == first.fetched_at


def test_cache_key_separates_recruiting_flag(store):
    session = FakeSession(FakeResponse(PAYLOAD))
    search_trials(store, "gastric", recruiting=True, session=session)
    everything = search_trials(store, "gastric", recruiting=False, session=session)
    assert everything.source == "live" and len(everything.items) == 2


def test_expired_cache_refetches(store):
    session = FakeSession(FakeResponse(PAYLOAD))
    search_trials(store, "gastric", recruiting=False, session=session)
    again = search_trials(store, "gastric", recruiting=False, session=session, ttl_hours=-1)
    assert again.source == "live" and len(session.calls) == 2


def test_http_error_raises(store):
    with pytest.raises(TrialsError):
        search_trials(store, "gastric", recruiting=False, session=FakeSession(FakeResponse({}, status=503)))
