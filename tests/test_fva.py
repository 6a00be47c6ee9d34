from __future__ import annotations

import pytest

from microbiota_sim.fva import run_targeted_fva
from microbiota_sim.model import Model


def _toy_cobra():
    model = Model.from_reactions(
        "toy",
        {
            "EX_a": {"a[c]": -1.0},
            "R1": {"a[c]": -1.0, "b[c]": 1.0},
            "R2": {"a[c]": -1.0, "b[c]": 1.0},
            "EX_b": {"b[c]": -1.0},
        },
        bounds={"EX_a": (-10.0, 0.0), "R1": (0.0, 1000.0), "R2": (0.0, 1000.0), "EX_b": (0.0, 1000.0)},
        objective={"EX_b": 1.0},
    )
    return model.to_cobra()


def test_targeted_fva_ranges() -> None:
    df = run_targeted_fva(_toy_cobra(), ["EX_b", "R1", "R1"], fraction_of_optimum=1.0)
    assert list(df.columns) == ["reaction_id", "fva_min", "fva_max"]
    assert df.reaction_id.tolist() == ["EX_b", "R1"]
    row = df.set_index("reaction_id")
    assert row.loc["EX_b", "fva_min"] == pytest.approx(10.0)
    assert row.loc["R1", "fva_min"] == pytest.approx(0.0)
    assert row.loc["R1", "fva_max"] == pytest.approx(10.0)


def test_targeted_fva_validates_arguments() -> None:
    with pytest.raises(ValueError, match="empty"):
        run_targeted_fva(_toy_cobra(), [])
    with pytest.raises(ValueError, match="fraction_of_optimum"):
        run_targeted_fva(_toy_cobra(), ["R1"], fraction_of_optimum=0.0)


def test_targeted_fva_leaves_loopless_at_cobra_default(recwarn: pytest.WarningsRecorder) -> None:
    run_targeted_fva(_toy_cobra(), ["R1"], fraction_of_optimum=1.0)
    assert not [w for w in recwarn if "loopless" in str(w.message)]
