"""Tests for sample-level design matrices and contrasts."""

import numpy as np
import pandas as pd
import pytest

from scdiffstate.stats.design_matrix import (
    DesignSpecification,
    build_design_matrix,
    make_contrasts,
)


@pytest.fixture
def sample_info():
    return pd.DataFrame({
        'sample_id': ['s1', 's2', 's3', 's4', 's5', 's6'],
        'group_id': ['ctrl', 'ctrl', 'stim', 'stim', 'mock', 'mock'],
    })


class TestBuildDesignMatrix:
    """Treatment-coded designs."""

    def test_default_reference_is_first_sorted_level(self, sample_info):
        X = build_design_matrix(sample_info)
        assert list(X.columns) == ['const', 'group_idmock', 'group_idstim']
        assert list(X.index) == ['s1', 's2', 's3', 's4', 's5', 's6']
        assert X.loc['s3', 'group_idstim'] == 1.0
        assert X.loc['s1', ['group_idmock', 'group_idstim']].sum() == 0.0

    def test_categorical_order_is_respected(self, sample_info):
        info = sample_info.assign(
            group_id=pd.Categorical(sample_info['group_id'], categories=['stim', 'ctrl', 'mock'])
        )
        X = build_design_matrix(info)
        assert list(X.columns) == ['const', 'group_idctrl', 'group_idmock']

    def test_explicit_reference(self, sample_info):
        X = build_design_matrix(sample_info, reference='stim')
        assert list(X.columns) == ['const', 'group_idctrl', 'group_idmock']

    def test_unknown_reference(self, sample_info):
        with pytest.raises(ValueError, match="Reference"):
            build_design_matrix(sample_info, reference='other')

    def test_single_level_rejected(self, sample_info):
        with pytest.raises(ValueError, match="at least 2 levels"):
            build_design_matrix(sample_info.assign(group_id='ctrl'))

    def test_numeric_covariate_standardized(self, sample_info):
        info = sample_info.assign(age=[20.0, 35.0, 50.0, 28.0, 41.0, 60.0])
        X = build_design_matrix(info, covariates=['age'])
        assert abs(X['age'].mean()) < 1e-10
        assert X['age'].std(ddof=1) == pytest.approx(1.0)

    def test_confounded_covariate_rank_deficient(self, sample_info):
        info = sample_info.assign(batch=['b1', 'b1', 'b2', 'b2', 'b3', 'b3'])
        with pytest.raises(ValueError, match="rank-deficient"):
            build_design_matrix(info, covariates=['batch'])


class TestMakeContrasts:
    """Contrast matrices."""

    def test_level_pair(self, sample_info):
        X = build_design_matrix(sample_info)
        C = make_contrasts(X, {'stim-mock': ('stim', 'mock')})
        np.testing.assert_array_equal(C['stim-mock'].to_numpy(), [0.0, -1.0, 1.0])

    def test_pair_against_reference(self, sample_info):
        X = build_design_matrix(sample_info)
        C = make_contrasts(X, {'stim-ctrl': ('stim', 'ctrl')})
        np.testing.assert_array_equal(C['stim-ctrl'].to_numpy(), [0.0, 0.0, 1.0])

    def test_explicit_weights(self, sample_info):
        X = build_design_matrix(sample_info)
        C = make_contrasts(X, {'avg': {'group_idmock': 0.5, 'group_idstim': 0.5}})
        np.testing.assert_array_equal(C['avg'].to_numpy(), [0.0, 0.5, 0.5])

    def test_unknown_levels(self, sample_info):
        X = build_design_matrix(sample_info)
        with pytest.raises(ValueError, match="Unknown level 'x'"):
            make_contrasts(X, {'bad': ('x', 'y')})

    def test_misspelled_level_not_taken_as_reference(self, sample_info):
        X = build_design_matrix(sample_info)
        with pytest.raises(ValueError, match="Unknown level 'ctr'"):
            make_contrasts(X, {'stim-ctrl': ('stim', 'ctr')})

    def test_same_level_twice(self, sample_info):
        X = build_design_matrix(sample_info)
        with pytest.raises(ValueError, match="with itself"):
            make_contrasts(X, {'c': ('stim', 'stim')})

    def test_reference_recorded_on_design(self, sample_info):
        X = build_design_matrix(sample_info, reference='stim')
        assert X.attrs['reference'] == {'group_id': 'stim'}
        C = make_contrasts(X, {'ctrl-stim': ('ctrl', 'stim')})
        np.testing.assert_array_equal(C['ctrl-stim'].to_numpy(), [0.0, 1.0, 0.0])

    def test_explicit_reference_for_external_design(self, sample_info):
        X = pd.DataFrame(build_design_matrix(sample_info).to_numpy(),
                         columns=['const', 'group_idmock', 'group_idstim'])
        with pytest.raises(ValueError, match="Unknown level 'ctrl'"):
            make_contrasts(X, {'stim-ctrl': ('stim', 'ctrl')})
        C = make_contrasts(X, {'stim-ctrl': ('stim', 'ctrl')}, reference='ctrl')
        np.testing.assert_array_equal(C['stim-ctrl'].to_numpy(), [0.0, 0.0, 1.0])


class TestDesignSpecification:
    """Comparisons, subsetting and estimability."""

    def test_default_comparison_is_last_coefficient(self, sample_info):
        spec = DesignSpecification(design=build_design_matrix(sample_info))
        (name, vector), = spec.comparisons()
        assert name == 'group_idstim'
        np.testing.assert_array_equal(vector, [0.0, 0.0, 1.0])

    def test_multiple_coefficients(self, sample_info):
        spec = DesignSpecification(
            design=build_design_matrix(sample_info),
            coef=('group_idmock', 'group_idstim'),
        )
        assert [name for name, _ in spec.comparisons()] == ['group_idmock', 'group_idstim']

    def test_coef_and_contrasts_exclusive(self, sample_info):
        X = build_design_matrix(sample_info)
        with pytest.raises(ValueError, match="either"):
            DesignSpecification(
                design=X,
                contrasts=make_contrasts(X, {'c': ('stim', 'ctrl')}),
                coef=('group_idstim',),
            )

    def test_unknown_coefficient(self, sample_info):
        with pytest.raises(ValueError, match="Unknown coefficients"):
            DesignSpecification(design=build_design_matrix(sample_info), coef=('group_idx',))

    def test_subset_keeps_order(self, sample_info):
        spec = DesignSpecification(design=build_design_matrix(sample_info))
        sub = spec.subset(['s6', 's1', 's3', 's2'])
        assert sub.samples == ['s6', 's1', 's3', 's2']
        assert sub.coef == spec.coef

    def test_estimable(self, sample_info):
        spec = DesignSpecification(design=build_design_matrix(sample_info))
        assert spec.is_estimable()
        assert spec.df_residual == 3

    def test_not_estimable_when_a_group_is_lost(self, sample_info):
        spec = DesignSpecification(design=build_design_matrix(sample_info))
        assert not spec.subset(['s1', 's2', 's3', 's4']).is_estimable()

    def test_not_estimable_without_residual_df(self, sample_info):
        spec = DesignSpecification(design=build_design_matrix(sample_info))
        assert not spec.subset(['s1', 's3', 's5']).is_estimable()
