"""
Tests for the AI-delegated age model.
"""

import pytest

from coresynth.agemodel import DelegateFailure, calibrate
from coresynth.ai_service import AINotConfiguredError, AIServiceError
from coresynth.delegate import RESPONSE_SCHEMA, DelegatedAgeModel, build_request, parse_response
from coresynth.models import ProxyRecord, Section, TiePoint


@pytest.fixture
def sections():
    return [
        Section(id='A', core_id='CORE-1', name='Upper', data_points=[
            ProxyRecord(depth=0, delta18O=3.2, mgCaRatio=2.9),
            ProxyRecord(depth=10, delta18O=3.3),
        ]),
        Section(id='B', core_id='CORE-1', name='Lower', data_points=[
            ProxyRecord(depth=100, delta18O=4.1),
        ]),
    ]


@pytest.fixture
def tie_points():
    return [TiePoint(section_id='A', depth=0, age=0), TiePoint(section_id='A', depth=10, age=5)]


def _answer(a_ages, b_ages=()):
    return {'calibratedSections': [
        {'id': 'A', 'dataPoints': [{'depth': d, 'age': a} for d, a in a_ages]},
        {'id': 'B', 'dataPoints': [{'depth': d, 'age': a} for d, a in b_ages]},
    ]}


class TestBuildRequest:
    def test_sends_depths_only(self, sections, tie_points):
        request = build_request(sections, tie_points)
        assert request['sections'][0] == {
            'id': 'A', 'name': 'Upper', 'dataPoints': [{'depth': 0}, {'depth': 10}]}
        assert request['tiePoints'][1] == {'sectionId': 'A', 'depth': 10, 'age': 5}


class TestParseResponse:
    def test_valid_answer(self, sections, tie_points):
        ages = parse_response(_answer([(0, 0), (10, 5)]), sections, tie_points)
        assert ages == {'A': {0.0: 0.0, 10.0: 5.0}, 'B': {}}

    def test_null_ages_are_dropped(self, sections, tie_points):
        ages = parse_response(_answer([(0, 0), (10, None)], [(100, None)]), sections, tie_points)
        assert ages['A'] == {0.0: 0.0}
        assert ages['B'] == {}

    def test_missing_list(self, sections, tie_points):
        with pytest.raises(DelegateFailure):
            parse_response({'sections': []}, sections, tie_points)

    def test_missing_section(self, sections, tie_points):
        payload = {'calibratedSections': [{'id': 'A', 'dataPoints': []}]}
        with pytest.raises(DelegateFailure, match='missing'):
            parse_response(payload, sections, tie_points)

    def test_duplicate_section(self, sections, tie_points):
        payload = _answer([(0, 5)])
        payload['calibratedSections'].append(
            {'id': 'A', 'dataPoints': [{'depth': 0, 'age': 999}]})
        with pytest.raises(DelegateFailure, match='more than once'):
            parse_response(payload, sections, tie_points)

    def test_non_numeric_age(self, sections, tie_points):
        with pytest.raises(DelegateFailure):
            parse_response(_answer([(0, 'zero')]), sections, tie_points)

    def test_boolean_age(self, sections, tie_points):
        with pytest.raises(DelegateFailure):
            parse_response(_answer([(0, True)]), sections, tie_points)

    def test_point_without_depth(self, sections, tie_points):
        payload = _answer([])
        payload['calibratedSections'][0]['dataPoints'] = [{'age': 1}]
        with pytest.raises(DelegateFailure):
            parse_response(payload, sections, tie_points)

    def test_invented_ages_for_uncalibrated_section(self, sections, tie_points):
        with pytest.raises(DelegateFailure, match='fewer than'):
            parse_response(_answer([(0, 0)], [(100, 50)]), sections, tie_points)


class TestDelegatedAgeModel:
    def test_merges_ages_into_original_records(self, llm_factory, sections, tie_points):
        client = llm_factory(responses=[_answer([(0, 0), (10, 5.123456)])])
        upper, lower = DelegatedAgeModel(client).calibrate(sections, tie_points)
        assert upper.data_points[0].to_dict() == {'depth': 0, 'age': 0, 'delta18O': 3.2,
                                                  'mgCaRatio': 2.9}
        assert upper.data_points[1].age == 5.1235
        assert lower.data_points[0].age is None
        assert lower.name == 'Lower'

    def test_sends_schema_and_instruction(self, llm_factory, sections, tie_points):
        client = llm_factory(responses=[_answer([])])
        DelegatedAgeModel(client).calibrate(sections, tie_points)
        call = client.calls[0]
        assert call['response_schema'] == RESPONSE_SCHEMA
        assert 'tie-points' in call['system_instruction']
        assert '"sectionId": "A"' in call['prompt']

    def test_matches_local_model_on_correct_answer(self, llm_factory, sections, tie_points):
        client = llm_factory(responses=[_answer([(0, 0), (10, 5)])])
        assert DelegatedAgeModel(client).calibrate(sections, tie_points) == \
            calibrate(sections, tie_points)

    def test_fenced_json_is_accepted(self, llm_factory, sections, tie_points):
        import json
        text = '```json\n' + json.dumps(_answer([(0, 0)])) + '\n```'
        client = llm_factory(responses=[text])
        upper, _ = DelegatedAgeModel(client).calibrate(sections, tie_points)
        assert upper.data_points[0].age == 0

    def test_invalid_json_fails(self, llm_factory, sections, tie_points):
        client = llm_factory(responses=['not json'])
        with pytest.raises(DelegateFailure, match='AI Age Model Error'):
            DelegatedAgeModel(client).calibrate(sections, tie_points)

    def test_service_error_fails(self, llm_factory, sections, tie_points):
        client = llm_factory(error=AIServiceError('Gemini API error: HTTP 500'))
        with pytest.raises(DelegateFailure):
            DelegatedAgeModel(client).calibrate(sections, tie_points)

    def test_not_configured_is_not_wrapped(self, llm_factory, sections, tie_points):
        client = llm_factory(error=AINotConfiguredError())
        with pytest.raises(AINotConfiguredError):
            DelegatedAgeModel(client).calibrate(sections, tie_points)

    def test_failure_leaves_inputs_untouched(self, llm_factory, sections, tie_points):
        client = llm_factory(responses=[_answer([(0, 0)], [(100, 1)])])
        with pytest.raises(DelegateFailure):
            DelegatedAgeModel(client).calibrate(sections, tie_points)
        assert all(dp.age is None for s in sections for dp in s.data_points)

    def test_extra_fields_in_answer_are_ignored(self, llm_factory, sections, tie_points):
        answer = _answer([(0, 0), (10, 5)])
        answer['calibratedSections'][0]['dataPoints'][0]['delta18O'] = 99.0
        client = llm_factory(responses=[answer])
        upper, _ = DelegatedAgeModel(client).calibrate(sections, tie_points)
        assert upper.data_points[0].proxies['delta18O'] == 3.2
