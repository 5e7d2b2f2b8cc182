"""
Tests for record types and proxy-record merging.
"""

import pytest

from coresynth.models import (
    Microfossil,
    ProxyRecord,
    Section,
    SpliceInterval,
    Taxonomy,
    merge_record,
    merge_records,
)


class TestProxyRecord:
    def test_extra_keys_are_proxies(self):
        record = ProxyRecord(depth=10, delta18O=3.2, mgCaRatio=2.1)
        assert record.proxies == {'delta18O': 3.2, 'mgCaRatio': 2.1}

    def test_to_dict_omits_missing_age(self):
        assert ProxyRecord(depth=10, delta18O=3.2).to_dict() == {'depth': 10, 'delta18O': 3.2}

    def test_with_age_sets_and_clears(self):
        record = ProxyRecord(depth=10, delta18O=3.2)
        dated = record.with_age(4.5)
        assert dated.age == 4.5
        assert dated.with_age(None).to_dict() == {'depth': 10, 'delta18O': 3.2}
        assert record.age is None

    @pytest.mark.parametrize('field', ['depth', 'age'])
    @pytest.mark.parametrize('value', [float('inf'), float('nan')])
    def test_rejects_non_finite(self, field, value):
        with pytest.raises(ValueError):
            ProxyRecord(**{field: value, 'delta18O': 3.2})

    def test_has_measurement(self):
        assert ProxyRecord(depth=1, tex86=0.6).has_measurement()
        assert not ProxyRecord(depth=1).has_measurement()
        assert not ProxyRecord(depth=1, tex86='').has_measurement()


class TestMergeRecord:
    def _series(self):
        return [ProxyRecord(depth=0, delta18O=3.0), ProxyRecord(depth=10, delta18O=3.4)]

    def test_appends_new_depth_in_order(self):
        merged, updated = merge_record(self._series(), ProxyRecord(depth=5, delta18O=3.2))
        assert not updated
        assert [r.depth for r in merged] == [0, 5, 10]

    def test_overwrites_existing_depth(self):
        merged, updated = merge_record(self._series(), ProxyRecord(depth=10, mgCaRatio=2.2))
        assert updated
        assert len(merged) == 2
        assert merged[1].proxies == {'delta18O': 3.4, 'mgCaRatio': 2.2}

    def test_overwrite_replaces_value(self):
        merged, _ = merge_record(self._series(), ProxyRecord(depth=0, delta18O=3.9))
        assert merged[0].proxies['delta18O'] == 3.9

    def test_tolerance_keeps_stored_depth(self):
        merged, updated = merge_record(self._series(), ProxyRecord(depth=10.004, tex86=0.5),
                                       tolerance=0.01)
        assert updated
        assert merged[1].depth == 10

    def test_input_not_mutated(self):
        series = self._series()
        merge_record(series, ProxyRecord(depth=10, delta18O=9.9))
        assert series[1].proxies['delta18O'] == 3.4

    def test_depth_required(self):
        with pytest.raises(ValueError, match='Depth is a required field'):
            merge_record(self._series(), ProxyRecord(delta18O=3.0))

    def test_proxy_value_required(self):
        with pytest.raises(ValueError, match='At least one proxy value'):
            merge_record(self._series(), ProxyRecord(depth=20))


class TestSpliceInterval:
    def test_bounds_unset(self):
        assert SpliceInterval(section_id='A', start_age=1).bounds() is None

    def test_bounds_normalized(self):
        assert SpliceInterval(section_id='A', start_age=9, end_age=3).bounds() == (3, 9)


class TestSection:
    def test_to_dict_drops_unset_ages(self):
        section = Section(id='A', core_id='C', name='A',
                          data_points=[{'depth': 1, 'delta18O': 3.0}])
        assert section.to_dict()['data_points'] == [{'depth': 1, 'delta18O': 3.0}]

    def test_rejects_unknown_period(self):
        with pytest.raises(ValueError):
            Section(id='A', core_id='C', name='A', geological_period='Warm')


class TestMicrofossil:
    def test_class_alias(self):
        taxonomy = Taxonomy(**{'class': 'Globothalamea', 'genus': 'Globigerina',
                               'species': 'bulloides'})
        assert taxonomy.class_ == 'Globothalamea'
        assert taxonomy.model_dump(by_alias=True)['class'] == 'Globothalamea'

    def test_display_name_defaults(self):
        assert Microfossil(id='F1').display_name == 'Unknown Fossil'


class TestMergeRecords:
    def test_overwrites_appends_and_skips(self):
        series = [ProxyRecord(depth=0, delta18O=3.0), ProxyRecord(depth=10, delta18O=3.4)]
        rows = [
            ProxyRecord(depth=10, mgCaRatio=2.2),
            ProxyRecord(depth=5, delta18O=3.2),
            ProxyRecord(delta18O=9.9),
            ProxyRecord(depth=7),
        ]
        merged, loaded, skipped = merge_records(series, rows)
        assert (loaded, skipped) == (2, 2)
        assert [r.depth for r in merged] == [0, 5, 10]
        assert merged[2].proxies == {'delta18O': 3.4, 'mgCaRatio': 2.2}

    def test_empty_batch(self):
        series = [ProxyRecord(depth=0, delta18O=3.0)]
        assert merge_records(series, []) == (series, 0, 0)
