import math

import pytest
import torch
import torch.nn as nn
from sympy import Eq

from deepflux import run
from deepflux.errors import ConfigError, DefinitionError, SchemaMismatchError
from deepflux.hydrology import (
    GraphAggregator,
    HydroBucket,
    HydroFlux,
    HydroModel,
    HydroParameter,
    HydroRoute,
    NeuralFlux,
    StateFlux,
    UnitHydrograph,
    build_exphydro,
    variables,
)
from deepflux.utils import NSELoss

DTYPE = torch.float64
EPS = 1e-6


def step(x: float) -> float:
    return (math.tanh(5.0 * x) + 1.0) * 0.5


def exphydro_reference(forcing, Tmin, Tmax, Df, Smax, Qmax, f):
    """Scalar Exp-Hydro: explicit Euler, fluxes reported at the updated storages."""
    snowpack = soilwater = 0.0
    rows = {"snowpack": [], "soilwater": [], "flow": []}
    for lday, prcp, temp in zip(*forcing):
        pet = 29.8 * lday * 24 * 0.611 * math.exp((17.3 * temp) / (temp + 237.3)) / (temp + 273.2)
        snowfall = step(Tmin - temp) * prcp
        rainfall = step(temp - Tmin) * prcp

        def melt_at(s):
            return step(temp - Tmax) * step(s) * min(s, Df * (temp - Tmax))

        snowpack = max(EPS, snowpack + snowfall - melt_at(snowpack))
        melt = melt_at(snowpack)

        def soil_fluxes(w):
            evap = step(w) * pet * min(1.0, w / Smax)
            baseflow = step(w) * Qmax * math.exp(-f * max(0.0, Smax - w))
            surfaceflow = max(0.0, w - Smax)
            return evap, baseflow + surfaceflow

        evap, flow = soil_fluxes(soilwater)
        soilwater = max(EPS, soilwater + rainfall + melt - evap - flow)
        _, flow = soil_fluxes(soilwater)

        rows["snowpack"].append(snowpack)
        rows["soilwater"].append(soilwater)
        rows["flow"].append(flow)
    return {k: torch.tensor(v, dtype=DTYPE) for k, v in rows.items()}


@pytest.fixture
def exphydro():
    return build_exphydro()


class TestExpHydroSchema:
    def test_names(self, exphydro) -> None:
        assert exphydro.input_names == ["lday", "prcp", "temp"]
        assert exphydro.state_names == ["snowpack", "soilwater"]
        assert exphydro.output_names == [
            "pet", "snowfall", "rainfall", "melt", "evap", "baseflow", "surfaceflow", "flow",
        ]
        assert exphydro.param_names == ["Df", "Qmax", "Smax", "Tmax", "Tmin", "f"]


class TestExpHydroRegression:
    def test_matches_scalar_reference(self, exphydro, forcing, exphydro_params) -> None:
        out = exphydro(forcing, {"params": exphydro_params})

        expected = exphydro_reference(forcing.tolist(), **exphydro_params)
        names = [*exphydro.state_names, *exphydro.output_names]
        for name in ("snowpack", "soilwater", "flow"):
            torch.testing.assert_close(out[names.index(name)], expected[name], rtol=1e-8, atol=1e-8)

    def test_snow_accumulates_and_melts(self, exphydro, forcing, exphydro_params) -> None:
        out = exphydro(forcing, {"params": exphydro_params})

        snowpack = out[0]
        assert float(snowpack.max()) > 1.0
        assert float(out[exphydro.output_names.index("melt") + 2].max()) > 0.0

    def test_solvers_agree(self, exphydro, forcing, exphydro_params) -> None:
        pas = {"params": exphydro_params}

        mutable = run(exphydro, forcing, pas, solver="mutable")
        immutable = run(exphydro, forcing, pas, solver="immutable")

        torch.testing.assert_close(mutable, immutable)

    def test_run_matches_direct_call(self, exphydro, forcing, exphydro_params) -> None:
        pas = {"params": exphydro_params}

        torch.testing.assert_close(run(exphydro, forcing, pas), exphydro(forcing, pas))


class TestExpHydroNodes:
    def test_duplicated_nodes_match_single_node(self, exphydro, forcing, exphydro_params) -> None:
        pas = {"params": exphydro_params}
        single = exphydro(forcing, pas)

        batched = exphydro(forcing.unsqueeze(1).expand(3, 4, 100), pas)

        for node in range(4):
            torch.testing.assert_close(batched[:, node], single)

    def test_parameter_types(self, exphydro, forcing, exphydro_params) -> None:
        params = dict(exphydro_params, Smax=torch.tensor([300.0, 150.0], dtype=DTYPE))
        config = {"ptyidx": [1, 0, 1]}

        out = exphydro(forcing.unsqueeze(1).expand(3, 3, 100), {"params": params}, config=config)

        assert torch.equal(out[:, 0], out[:, 2])
        single = exphydro(forcing, {"params": dict(exphydro_params, Smax=150.0)})
        torch.testing.assert_close(out[:, 0], single)


class TestGradients:
    def test_loss_gradient_reaches_parameters(self, exphydro, forcing, exphydro_params) -> None:
        params = {k: torch.tensor(v, dtype=DTYPE, requires_grad=True) for k, v in exphydro_params.items()}
        observed = exphydro_reference(forcing.tolist(), **dict(exphydro_params, Qmax=25.0))["flow"]
        observed[::7] = float("nan")

        out = run(exphydro, forcing, {"params": params}, solver="immutable")
        flow = out[2 + exphydro.output_names.index("flow")]
        NSELoss()(flow, observed).backward()

        for name in ("Qmax", "Smax", "f"):
            assert params[name].grad is not None
            assert torch.isfinite(params[name].grad)
        assert params["Qmax"].grad != 0


class TestComposition:
    def test_bucket_then_unit_hydrograph(self, forcing, exphydro_params) -> None:
        from deepflux.hydrology.implements import build_snow_bucket, build_soil_bucket

        uh = UnitHydrograph(["flow"], HydroParameter("lag"), "UH_1_HALF")
        model = HydroModel([build_snow_bucket(), build_soil_bucket(), uh])
        pas = {"params": dict(exphydro_params, lag=3.0)}

        out = model(forcing, pas)

        assert model.output_names[-1] == "flow_lag"
        flow = out[2 + model.output_names.index("flow")]
        lagged = out[-1]
        torch.testing.assert_close(lagged, uh(flow.unsqueeze(0), pas)[0])

    def test_sort_reorders_components(self) -> None:
        from deepflux.hydrology.implements import build_snow_bucket, build_soil_bucket

        with pytest.raises(DefinitionError, match="before it is produced"):
            HydroModel([build_soil_bucket(), build_snow_bucket()])

        model = HydroModel([build_soil_bucket(), build_snow_bucket()], sort=True)

        assert [c.name for c in model.components] == ["snow", "soil"]

    def test_route_must_be_last(self) -> None:
        q, s, runoff = variables("q_r s_r runoff")
        route = HydroRoute(
            [HydroFlux(Eq(q, s * 0.5))],
            [StateFlux.from_balance(s, [variables("inflow")[0], runoff], [q])],
            GraphAggregator([(0, 1)], 2),
        )
        p, w, out = variables("p w runoff")
        bucket = HydroBucket([HydroFlux(Eq(out, w * 0.1))], [StateFlux.from_balance(w, [p], [out])], name="b")

        with pytest.raises(DefinitionError, match="last"):
            HydroModel([route, bucket])
        model = HydroModel([bucket, route])
        result = model(torch.ones(1, 2, 20, dtype=DTYPE), {"params": {}})
        assert result.shape == (len(model.state_names) + len(model.output_names), 2, 20)

    def test_config_per_component(self, exphydro, forcing, exphydro_params) -> None:
        pas = {"params": exphydro_params}
        configs = [{"solver": "immutable"}, {"solver": "mutable"}]

        torch.testing.assert_close(exphydro(forcing, pas, config=configs), exphydro(forcing, pas))
        with pytest.raises(ConfigError):
            exphydro(forcing, pas, config=[{}])

    def test_missing_parameter_names_the_model(self, exphydro, forcing, exphydro_params) -> None:
        params = dict(exphydro_params)
        del params["Smax"]

        with pytest.raises(SchemaMismatchError) as err:
            exphydro(forcing, {"params": params})

        assert err.value.component == "exphydro"
        assert err.value.identifier == "Smax"

    def test_initial_states(self, exphydro, forcing, exphydro_params) -> None:
        pas = {"params": exphydro_params}

        zero = exphydro(forcing, pas)
        explicit = exphydro(forcing, pas, {"snowpack": 0.0, "soilwater": 0.0})
        wet = exphydro(forcing, pas, {"snowpack": 0.0, "soilwater": 200.0})

        torch.testing.assert_close(zero, explicit)
        assert float(wet[1, 0]) > float(zero[1, 0])


class TestNetworkNames:
    def test_same_name_for_two_networks_is_rejected(self) -> None:
        a, b, c = variables("na nb nc")
        first = HydroBucket([NeuralFlux([a], [b], nn.Linear(1, 1), nn_name="net")], name="first")
        second = HydroBucket([NeuralFlux([a, b], [c], nn.Linear(2, 1), nn_name="net")], name="second")

        with pytest.raises(DefinitionError, match="'net'"):
            HydroModel([first, second])

    def test_one_network_may_be_shared(self) -> None:
        a, b, c = variables("na nb nc")
        shared = nn.Linear(1, 1).double()
        first = HydroBucket([NeuralFlux([a], [b], shared, nn_name="net")], name="first")
        second = HydroBucket([NeuralFlux([b], [c], shared, nn_name="net")], name="second")

        model = HydroModel([first, second])
        out = model(torch.ones(1, 4, dtype=DTYPE), {"params": {}, "nns": {"net": first.fluxes[0].init_params()}})

        assert model.nn_names == ["net"]
        expected = shared(shared(torch.ones(4, 1, dtype=DTYPE))).squeeze(-1).detach()
        torch.testing.assert_close(out[-1], expected)
