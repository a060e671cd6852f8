import pytest
import torch
import torch.nn as nn
from sympy import Eq

from deepflux.errors import DefinitionError, SchemaMismatchError
from deepflux.hydrology import (
    GraphAggregator,
    GridAggregator,
    HydroFlux,
    HydroParameter,
    HydroRoute,
    NeuralFlux,
    StateFlux,
    variables,
)

DTYPE = torch.float64

FLWDIR = [[1, 4, 8], [1, 4, 4], [1, 1, 2]]
POSITIONS = [(r, c) for r in range(3) for c in range(3)]

s_river, q_out, q_gen, inflow = variables("s_river q_out q_gen inflow")
lag = HydroParameter("lag", bounds=(0.0, 10.0))


def storage_route(aggregator, routing_order="parallel"):
    return HydroRoute(
        rfluxes=[HydroFlux(Eq(q_out, s_river / (1 + lag)), name="storage_outflow")],
        dfluxes=[StateFlux.from_balance(s_river, [inflow, q_gen], [q_out])],
        aggregator=aggregator,
        name="river",
        routing_order=routing_order,
    )


class TestGridAggregator:
    def test_upstream_counts(self) -> None:
        agg = GridAggregator(FLWDIR, POSITIONS)

        inflow = agg(torch.ones(9, dtype=DTYPE))

        expected = torch.tensor([0, 1, 0, 0, 3, 0, 0, 2, 2], dtype=DTYPE)
        torch.testing.assert_close(inflow, expected)

    def test_trailing_axes(self) -> None:
        agg = GridAggregator(FLWDIR, POSITIONS)
        outflow = torch.arange(9, dtype=DTYPE).unsqueeze(-1).expand(9, 4)

        inflow = agg(outflow)

        assert inflow.shape == (9, 4)
        # cell (1, 1) receives from (0, 1), (0, 2) and (1, 0)
        torch.testing.assert_close(inflow[4], torch.full((4,), 1.0 + 2.0 + 3.0, dtype=DTYPE))

    def test_edges_and_levels(self) -> None:
        agg = GridAggregator(FLWDIR, POSITIONS)

        assert (4, 7) in agg.edges
        assert (0, 1) in agg.edges
        levels = agg.node_levels()
        assert levels[0] == [0, 2, 3, 5, 6]
        assert levels[-1] == [8]

    def test_flow_leaving_the_node_set_is_dropped(self) -> None:
        agg = GridAggregator(FLWDIR, [(0, 0), (2, 2)])

        torch.testing.assert_close(agg(torch.ones(2, dtype=DTYPE)), torch.zeros(2, dtype=DTYPE))

    def test_position_outside_grid(self) -> None:
        with pytest.raises(DefinitionError):
            GridAggregator(FLWDIR, [(3, 0)])


class TestGraphAggregator:
    def test_upstream_counts(self) -> None:
        agg = GraphAggregator([(0, 2), (1, 2), (2, 3)], 4)

        torch.testing.assert_close(agg(torch.ones(4, dtype=DTYPE)), torch.tensor([0, 0, 2, 1], dtype=DTYPE))

    def test_matches_adjacency_transpose_product(self) -> None:
        agg = GraphAggregator([(0, 2), (1, 2), (2, 3), (0, 3)], 4)
        outflow = torch.rand(4, 6, dtype=DTYPE)

        expected = agg.adjacency(dtype=DTYPE).to_dense().T @ outflow

        torch.testing.assert_close(agg(outflow), expected)

    def test_from_adjacency(self) -> None:
        adjacency = torch.zeros(3, 3)
        adjacency[0, 1] = 1
        adjacency[1, 2] = 1

        agg = GraphAggregator.from_adjacency(adjacency)

        assert agg.edges == [(0, 1), (1, 2)]
        assert agg.node_levels() == [[0], [1], [2]]

    def test_grid_and_graph_agree(self) -> None:
        grid = GridAggregator(FLWDIR, POSITIONS)
        graph = GraphAggregator(grid.edges, grid.num_nodes)
        outflow = torch.rand(9, 5, dtype=DTYPE)

        torch.testing.assert_close(grid(outflow), graph(outflow))

    def test_cyclic_graph(self) -> None:
        with pytest.raises(DefinitionError):
            storage_route(GraphAggregator([(0, 1), (1, 0)], 2))


class TestHydroRoute:
    def test_schema(self) -> None:
        route = storage_route(GraphAggregator([(0, 1)], 2))

        assert route.input_names == ["q_gen"]
        assert route.state_names == ["s_river"]
        assert route.output_names == ["q_out", "inflow"]
        assert route.param_names == ["lag"]

    @pytest.mark.parametrize("routing_order", ["parallel", "topological"])
    def test_chain_reaches_accumulated_steady_state(self, routing_order: str) -> None:
        route = storage_route(GraphAggregator([(0, 1), (1, 2)], 3), routing_order)
        runoff = torch.ones(1, 3, 300, dtype=DTYPE)

        out = route(runoff, {"params": {"lag": 1.0}})

        outflow = out[1, :, -1]
        torch.testing.assert_close(outflow, torch.tensor([1.0, 2.0, 3.0], dtype=DTYPE), rtol=1e-6, atol=1e-6)
        assert outflow[2] > outflow[0]
        torch.testing.assert_close(out[2, :, -1], torch.tensor([0.0, 1.0, 2.0], dtype=DTYPE), rtol=1e-6, atol=1e-6)

    def test_grid_route_mass_balance_at_steady_state(self) -> None:
        route = storage_route(GridAggregator(FLWDIR, POSITIONS))
        runoff = torch.ones(1, 9, 400, dtype=DTYPE)

        out = route(runoff, {"params": {"lag": 0.5}})

        # outflow of every node equals its local runoff plus everything upstream of it
        upstream_area = torch.tensor([1, 2, 1, 1, 5, 1, 1, 7, 9], dtype=DTYPE)
        torch.testing.assert_close(out[1, :, -1], upstream_area, rtol=1e-6, atol=1e-6)

    def test_topological_outflow_sees_same_step_inflow(self) -> None:
        s, q, r = variables("s q r")
        route = HydroRoute(
            rfluxes=[HydroFlux(Eq(q, inflow + r))],
            dfluxes=[StateFlux(s, r - s)],
            aggregator=GraphAggregator([(0, 1), (1, 2)], 3),
            routing_order="topological",
        )

        out = route(torch.ones(1, 3, 4, dtype=DTYPE), {"params": {}})

        expected = torch.tensor([1.0, 2.0, 3.0], dtype=DTYPE).unsqueeze(-1).expand(3, 4)
        torch.testing.assert_close(out[1], expected)

    def test_parallel_routing_cannot_read_inflow(self) -> None:
        s, q, r = variables("s q r")
        with pytest.raises(DefinitionError, match="topological"):
            HydroRoute(
                rfluxes=[HydroFlux(Eq(q, inflow + r))],
                dfluxes=[StateFlux(s, r - s)],
                aggregator=GraphAggregator([(0, 1)], 2),
            )

    def test_node_count_must_match_topology(self) -> None:
        route = storage_route(GraphAggregator([(0, 1)], 2))

        with pytest.raises(SchemaMismatchError) as err:
            route(torch.ones(1, 3, 5, dtype=DTYPE), {"params": {"lag": 1.0}})

        assert err.value.component == "river"

    def test_solvers_agree(self) -> None:
        route = storage_route(GridAggregator(FLWDIR, POSITIONS))
        runoff = torch.rand(1, 9, 50, dtype=DTYPE)
        pas = {"params": {"lag": torch.rand(9, dtype=DTYPE) * 3}}

        mutable = route(runoff, pas, config={"solver": "mutable"})
        immutable = route(runoff, pas, config={"solver": "immutable"})

        torch.testing.assert_close(mutable, immutable)

    def test_same_name_for_two_networks_is_rejected(self) -> None:
        q_nn, q_aux = variables("q_nn q_aux")
        rfluxes = [
            NeuralFlux([s_river], [q_nn], nn.Linear(1, 1), nn_name="net"),
            NeuralFlux([s_river], [q_aux], nn.Linear(1, 1), nn_name="net"),
        ]

        with pytest.raises(DefinitionError, match="'net'"):
            HydroRoute(
                rfluxes,
                [StateFlux.from_balance(s_river, [inflow, q_gen], [q_nn])],
                GraphAggregator([(0, 1)], 2),
                outflow="q_nn",
            )
