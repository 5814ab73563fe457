"""
Derived outputs: time series calculated from a trajectory, such as incidence or prevalence.
"""
import logging
from typing import Callable, Dict, List, Optional

import networkx
import numpy as np
from scipy.integrate import cumulative_trapezoid

from epiflow.exceptions import MalformedModel, UnknownReference
from epiflow.model import CompartmentalModel, Parameters
from epiflow.trajectory import Trajectory

logger = logging.getLogger(__name__)


class OutputRequests:
    """
    A set of derived outputs requested for a model.

    Outputs may depend on other outputs. They are calculated in dependency order, which is
    tracked with a directed acyclic graph.

    Args:
        model: The model whose trajectories the outputs are calculated from.

    Example:
        Request the prevalence of infection::

            outputs = OutputRequests(model)
            outputs.request_output_for_compartments("infectious", ["I"], save_results=False)
            outputs.request_output_for_compartments("population", ["S", "I", "R"], save_results=False)
            outputs.request_function_output("prevalence", lambda i, n: i / n, ["infectious", "population"])
            results = outputs.calculate(trajectory, parameters)

    """

    _FLOW_REQUEST = "flow"
    _COMPARTMENT_REQUEST = "compartment"
    _AGGREGATE_REQUEST = "aggregate"
    _CUMULATIVE_REQUEST = "cumulative"
    _FUNCTION_REQUEST = "func"

    def __init__(self, model: CompartmentalModel):
        self.model = model
        self._requests = {}
        self._graph = networkx.DiGraph()
        self._whitelist = []

    @property
    def names(self) -> List[str]:
        return list(self._requests.keys())

    def set_whitelist(self, whitelist: List[str]):
        """
        Request that we should only calculate a subset of the outputs and their dependencies.
        """
        for name in whitelist:
            self._check_source(name)

        self._whitelist = list(whitelist)

    def request_output_for_flow(self, name: str, flow_name: str, save_results: bool = True):
        """
        Adds an output which is the rate of the named flow at each sample time.

        Args:
            name: The name of the derived output.
            flow_name: The name of the flow to track.
            save_results (optional): Whether to save or discard the results.

        """
        if flow_name not in self.model.get_flow_names():
            raise UnknownReference(f"No flow is named {flow_name}.")

        self._add_request(name, [], request_type=self._FLOW_REQUEST, flow_name=flow_name, save_results=save_results)

    def request_output_for_compartments(
        self, name: str, compartments: List[str], save_results: bool = True
    ):
        """
        Adds an output which is the total size of the given compartments at each sample time.

        Args:
            name: The name of the derived output.
            compartments: The names of the compartments to track.
            save_results (optional): Whether to save or discard the results.

        """
        for comp_name in compartments:
            self.model.get_compartment(comp_name)

        self._add_request(
            name,
            [],
            request_type=self._COMPARTMENT_REQUEST,
            compartments=list(compartments),
            save_results=save_results,
        )

    def request_aggregate_output(self, name: str, sources: List[str], save_results: bool = True):
        """
        Adds an output which is the sum of other derived outputs.
        """
        self._add_request(
            name,
            sources,
            request_type=self._AGGREGATE_REQUEST,
            sources=list(sources),
            save_results=save_results,
        )

    def request_cumulative_output(
        self,
        name: str,
        source: str,
        start_time: Optional[float] = None,
        save_results: bool = True,
    ):
        """
        Adds an output which is the integral over time of another derived output, using the trapezoidal
        rule between sample times. The integral of a flow rate is the number of people who have moved,
        and the integral of a compartment size is person-time.

        Args:
            name: The name of the derived output.
            source: The name of the derived output to accumulate.
            start_time (optional): The time to start accumulating from, defaults to the first sample time.
            save_results (optional): Whether to save or discard the results.

        """
        self._add_request(
            name,
            [source],
            request_type=self._CUMULATIVE_REQUEST,
            source=source,
            start_time=start_time,
            save_results=save_results,
        )

    def request_function_output(
        self,
        name: str,
        func: Callable[..., np.ndarray],
        sources: List[str],
        save_results: bool = True,
    ):
        """
        Adds an output which is the result of a function of other derived outputs,
        which are passed to the function in the order given.
        """
        self._add_request(
            name,
            sources,
            request_type=self._FUNCTION_REQUEST,
            func=func,
            sources=list(sources),
            save_results=save_results,
        )

    def _add_request(self, name: str, dependencies: List[str], **request):
        if name in self._requests:
            raise MalformedModel(f"A derived output named {name} already exists.")

        for source in dependencies:
            self._check_source(source)

        self._graph.add_node(name)
        for source in dependencies:
            self._graph.add_edge(source, name)

        self._requests[name] = request

    def _check_source(self, name: str):
        if name not in self._requests:
            raise UnknownReference(f"Derived output {name} has not been requested.")

    def calculate(self, trajectory: Trajectory, parameters: Parameters) -> Dict[str, np.ndarray]:
        """
        Calculates all requested outputs from a trajectory of the model.
        Flow outputs are the instantaneous flow rates at each sample, evaluated with the given parameters.
        """
        error_msg = "Cannot calculate derived outputs: dependency graph has cycles."
        assert networkx.is_directed_acyclic_graph(self._graph), error_msg
        graph = self._graph.copy()
        if self._whitelist:
            # Only calculate the required outputs and their dependencies, ignore everything else.
            required_nodes = set()
            for name in self._whitelist:
                required_nodes |= set(networkx.ancestors(graph, name)) | {name}

            graph.remove_nodes_from([n for n in list(graph.nodes) if n not in required_nodes])

        times = trajectory.times
        flow_values = None
        outputs = {}
        for name in networkx.topological_sort(graph):
            request = self._requests[name]
            request_type = request["request_type"]
            if request_type == self._FLOW_REQUEST:
                if flow_values is None:
                    flow_func = self.model.get_flow_value_function(parameters)
                    flow_values = np.array([flow_func(v) for v in trajectory.values])
                    flow_values = flow_values.reshape(len(times), len(self.model.get_flows()))

                flow_idx = self.model.get_flow_names().index(request["flow_name"])
                output = flow_values[:, flow_idx]

            elif request_type == self._COMPARTMENT_REQUEST:
                idxs = [self.model.get_compartment(c).idx for c in request["compartments"]]
                output = trajectory.values[:, idxs].sum(axis=1)

            elif request_type == self._AGGREGATE_REQUEST:
                output = sum(outputs[s] for s in request["sources"])

            elif request_type == self._CUMULATIVE_REQUEST:
                output = self._get_cumulative(name, outputs[request["source"]], times, request["start_time"])

            elif request_type == self._FUNCTION_REQUEST:
                inputs = [outputs[s] for s in request["sources"]]
                output = request["func"](*inputs)

            outputs[name] = np.asarray(output, dtype=float)

        return {
            name: values
            for name, values in outputs.items()
            if self._requests[name]["save_results"]
        }

    @staticmethod
    def _get_cumulative(name, values, times, start_time):
        output = np.zeros(times.shape)
        if len(times) == 0:
            return output

        if start_time is None:
            start_time = times[0]
        elif start_time > times.max():
            msg = f"Cumulative output '{name}' start time {start_time} is after the last sample time."
            logger.warning(msg)
            return output

        start_idx = int(np.searchsorted(times, start_time))
        output[start_idx:] = cumulative_trapezoid(values[start_idx:], times[start_idx:], initial=0)
        return output
