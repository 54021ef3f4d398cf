"""This module implements the cluster: a fixed roster of acceptor nodes (which double as proposers) and learner nodes
living in one process. The cluster selects a proposer for a round, computes the quorum and keeps track of the decision.
"""

import collections
import logging

from twisted.internet import reactor

from piSynod.messages import NO_PROPOSAL
from piSynod.PaxosLogic import Node, Learner, Committed
from piSynod.PaxosNetwork import LocalPeer
from piSynod.storage import StateStore


logger = logging.getLogger(__name__)


class RoleError(ValueError):
    """Raised if a node is asked to take a role it does not have, e.g a learner to propose."""


class AgreementError(Exception):
    """Raised if two rounds committed different values. Signals a violation of the paxos safety property."""


def quorum(total_nodes):
    """
    Args:
        total_nodes (int): number of acceptor nodes.

    Returns:
        int: size of a majority of `total_nodes`.
    """
    return total_nodes // 2 + 1


def lowest_id(node_ids):
    """Default proposer selection: always the node with the lowest id."""
    return min(node_ids)


class Cluster:
    """A roster of acceptor nodes and a disjoint set of learner nodes. Acceptors get the ids 0..num_acceptors-1, learners
    the following ids.

    Note: The cluster never touches the promise/accept state of a node, it only runs rounds through proposers.

    Args:
        num_acceptors (int): number of acceptor-capable nodes.
        num_learners (int): number of learner-only nodes.
        reactor (IReactorTime): used for timeouts, backoff and delays. Must be parametrized for testing (default =
            global reactor).
        selector (Callable): picks the proposer from a list of acceptor ids if `run_round` is called without one.
            Defaults to `lowest_id`; pass e.g `random.choice` for random proposer selection.
        db_path (str): if given, every node persists its state in a LevelDB database below this directory.
        **proposer_options: max_attempts, timeout and backoff passed on to each Proposer.

    Attributes:
        nodes (dict): node id -> Node.
        learners (dict): node id -> Learner.
        peers (dict): node id -> LocalPeer of the acceptor or learner with that id.
        round_counter (int): number of rounds started so far.
        proposer_id (int): id of the node that proposed in the current (or last) round.
        decision (Committed): the first committed decision, None until a round committed.
    """
    def __init__(self, num_acceptors, num_learners, reactor=reactor, selector=lowest_id, db_path=None,
                 **proposer_options):
        if num_acceptors < 1:
            raise ValueError('a cluster needs at least one acceptor')

        self.reactor = reactor
        self.selector = selector
        self.proposer_options = proposer_options
        self.stores = []

        self.nodes = {}
        self.learners = {}
        self.peers = {}
        for node_id in range(num_acceptors):
            self.nodes[node_id] = Node(node_id, self.open_store(node_id, db_path))
        for node_id in range(num_acceptors, num_acceptors + num_learners):
            self.learners[node_id] = Learner(node_id, self.open_store(node_id, db_path))
        for node_id, target in list(self.nodes.items()) + list(self.learners.items()):
            self.peers[node_id] = LocalPeer(target, self.reactor)

        self.round_counter = 0
        self.proposer_id = None
        self.decision = None

        self.recover_decision()

    def recover_decision(self):
        """Restore `decision` after a restart. Learners report it directly. A value that a quorum of acceptors
        accepted under the same number was chosen as well, which covers clusters without learners.
        """
        for learner in self.learners.values():
            if learner.decision is not None:
                self.record(learner.decision)

        votes = collections.defaultdict(list)
        for node in self.nodes.values():
            if node.acceptor.accepted_n != NO_PROPOSAL:
                votes[node.acceptor.accepted_n].append(node.acceptor.accepted_value)
        for n, values in sorted(votes.items()):
            if len(values) >= self.quorum_size:
                self.record(Committed(n, values[0]))

    def open_store(self, node_id, db_path):
        if db_path is None:
            return None
        store = StateStore(node_id, db_path)
        self.stores.append(store)
        return store

    @property
    def total_nodes(self):
        return len(self.nodes)

    @property
    def quorum_size(self):
        return quorum(self.total_nodes)

    def node(self, node_id):
        """
        Returns:
            Node or Learner: the node with id `node_id`.
        """
        if node_id in self.nodes:
            return self.nodes[node_id]
        if node_id in self.learners:
            return self.learners[node_id]
        raise RoleError('unknown node %s' % node_id)

    def run_round(self, proposer_id=None, candidate_value=None):
        """Let a node propose `candidate_value`.

        Args:
            proposer_id (int): id of the proposing acceptor node. If None, `selector` picks one.
            candidate_value: value to propose if none was chosen yet.

        Returns:
            Deferred: fires with Committed or QuorumFailed.

        Raises:
            RoleError: if `proposer_id` is a learner or unknown.
        """
        if proposer_id is None:
            proposer_id = self.selector(sorted(self.nodes))
        if proposer_id not in self.nodes:
            if proposer_id in self.learners:
                raise RoleError('learner %s cannot propose' % proposer_id)
            raise RoleError('unknown node %s' % proposer_id)

        self.round_counter += 1
        self.proposer_id = proposer_id
        logger.debug('round %s: node %s proposes %r', self.round_counter, proposer_id, candidate_value)

        options = dict(self.proposer_options, reactor=self.reactor)
        proposer = self.nodes[proposer_id].proposer(
            [self.peers[i] for i in sorted(self.nodes)],
            [self.peers[i] for i in sorted(self.learners)],
            self.quorum_size,
            **options)

        d = proposer.run_round(candidate_value)
        d.addCallback(self.round_finished)
        return d

    def round_finished(self, outcome):
        if isinstance(outcome, Committed):
            self.record(outcome)
        return outcome

    def record(self, decision):
        if self.decision is None:
            self.decision = decision
        elif self.decision.value != decision.value:
            raise AgreementError('committed %r after %r had been chosen' % (decision.value, self.decision.value))

    def set_down(self, node_id, down=True):
        """Make the node `node_id` stop (or resume) responding to requests."""
        self.node(node_id)
        self.peers[node_id].down = down

    def set_delay(self, node_id, delay):
        """Delay all responses of node `node_id` by `delay` seconds."""
        self.node(node_id)
        self.peers[node_id].delay = delay

    def close(self):
        for store in self.stores:
            store.close()


def new_cluster(num_acceptors, num_learners, **kwargs):
    """Create a Cluster, see its arguments."""
    return Cluster(num_acceptors, num_learners, **kwargs)
