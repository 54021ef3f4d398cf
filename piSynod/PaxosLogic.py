"""This module implements the logic of the single-decree paxos algorithm: the acceptor, the proposer and the learner
role as well as a node combining the acceptor and the proposer role."""

import logging
import random
import threading

from twisted.internet import defer, reactor
from twisted.internet.task import deferLater

from piSynod import config
from piSynod.messages import NO_PROPOSAL, ProposalNumber, Promise, Accepted, Reject


logger = logging.getLogger(__name__)

PREPARE = 'prepare'
ACCEPT = 'accept'

UNPROMISED = 'unpromised'
PROMISED = 'promised'
ACCEPTED = 'accepted'


class Committed:
    """Outcome of a round in which a quorum accepted `value` under `proposal_number`."""
    def __init__(self, proposal_number, value):
        self.proposal_number = proposal_number
        self.value = value

    def __eq__(self, other):
        return isinstance(other, Committed) and \
            (self.proposal_number, self.value) == (other.proposal_number, other.value)

    def __repr__(self):
        return 'Committed(%r, %r)' % (self.proposal_number, self.value)


class QuorumFailed:
    """Outcome of a round that did not reach a quorum.

    Args:
        phase (str): PREPARE if no prepare attempt got a quorum of promises, ACCEPT if the accept phase failed.
        proposal_number (ProposalNumber): number used in the last attempt.
        attempts (int): number of prepare attempts made in the round.
    """
    def __init__(self, phase, proposal_number, attempts):
        self.phase = phase
        self.proposal_number = proposal_number
        self.attempts = attempts

    @property
    def stalled(self):
        """bool: True if the proposer gave up after exhausting its prepare attempts (liveness stall)."""
        return self.phase == PREPARE

    def __repr__(self):
        return 'QuorumFailed(%r, %r, %r)' % (self.phase, self.proposal_number, self.attempts)


class ProposalNumberGenerator:
    """Produces monotonically increasing proposal numbers for one node.

    Args:
        node_id (int): id of the owning node, used as tie-break.
        store (StateStore): optional, persists the counter s.t numbers stay fresh after a restart.
    """
    def __init__(self, node_id, store=None):
        self.node_id = node_id
        self.store = store
        self.counter = 0
        self.lock = threading.Lock()

        if self.store is not None:
            self.counter = self.store.get('counter', 0)

    def next(self):
        """
        Returns:
            ProposalNumber: a number greater than every number returned or observed so far.
        """
        with self.lock:
            counter = self.counter + 1
            if self.store is not None:
                self.store.put(counter=counter)
            self.counter = counter
            return ProposalNumber(counter, self.node_id)

    def observe(self, n):
        """Make sure the next number is greater than `n`.

        Args:
            n (ProposalNumber): a number seen in a response of another node.
        """
        with self.lock:
            if n.counter > self.counter:
                self.counter = n.counter


class Acceptor:
    """Acceptor role of a node. Votes on proposals via `prepare` and `accept`.

    The triple (`promised_n`, `accepted_n`, `accepted_value`) is owned by the acceptor and only changed by its own
    handlers, each of which runs under `lock`.

    Args:
        node_id (int): id of the node.
        store (StateStore): optional, if given the state is loaded from it and every change is written through.

    Attributes:
        promised_n (ProposalNumber): highest number promised so far.
        accepted_n (ProposalNumber): number of the accepted value.
        accepted_value: the accepted value (None if nothing accepted yet).
    """
    def __init__(self, node_id, store=None):
        self.node_id = node_id
        self.store = store
        self.lock = threading.Lock()

        self.promised_n = NO_PROPOSAL
        self.accepted_n = NO_PROPOSAL
        self.accepted_value = None

        if self.store is not None:
            self.promised_n = ProposalNumber.from_list(self.store.get('promised_n', NO_PROPOSAL.to_list()))
            self.accepted_n = ProposalNumber.from_list(self.store.get('accepted_n', NO_PROPOSAL.to_list()))
            self.accepted_value = self.store.get('accepted_value')

    def prepare(self, n):
        """Handle a prepare request.

        Args:
            n (ProposalNumber): number of the proposer's round.

        Returns:
            Promise: if `n` is higher than every number promised so far.
            Reject: otherwise, the state is left untouched.
        """
        with self.lock:
            if n > self.promised_n:
                if self.store is not None:
                    self.store.put(promised_n=n.to_list())
                self.promised_n = n
                logger.debug('node %s: promise %s', self.node_id, n)
                return Promise(n, self.accepted_n, self.accepted_value)

            logger.debug('node %s: reject prepare %s, promised %s', self.node_id, n, self.promised_n)
            return Reject(n, self.promised_n)

    def accept(self, n, value):
        """Handle an accept request.

        Args:
            n (ProposalNumber): number of the proposer's round.
            value: value selected by the proposer.

        Returns:
            Accepted: if no higher number was promised in the meantime.
            Reject: otherwise.
        """
        with self.lock:
            if n >= self.promised_n:
                if self.store is not None:
                    self.store.put(promised_n=n.to_list(), accepted_n=n.to_list(), accepted_value=value)
                self.promised_n = n
                self.accepted_n = n
                self.accepted_value = value
                logger.debug('node %s: accept %s', self.node_id, n)
                return Accepted(n, value)

            logger.debug('node %s: reject accept %s, promised %s', self.node_id, n, self.promised_n)
            return Reject(n, self.promised_n)

    @property
    def state(self):
        if self.accepted_n != NO_PROPOSAL:
            return ACCEPTED
        if self.promised_n != NO_PROPOSAL:
            return PROMISED
        return UNPROMISED


class Learner:
    """Learner role. Passively records the decision once a proposer reports a committed value.

    A learner never proposes or accepts, it offers neither `prepare`, `accept` nor `run_round`.

    Args:
        node_id (int): id of the learner node.
        store (StateStore): optional, persists the learned decision.

    Attributes:
        learned_n (ProposalNumber): number of the most recently learned decision.
        learned_value: the learned value (None if nothing learned yet).
    """
    def __init__(self, node_id, store=None):
        self.node_id = node_id
        self.store = store
        self.lock = threading.Lock()

        self.learned_n = NO_PROPOSAL
        self.learned_value = None

        if self.store is not None:
            self.learned_n = ProposalNumber.from_list(self.store.get('learned_n', NO_PROPOSAL.to_list()))
            self.learned_value = self.store.get('learned_value')

    def learn(self, n, value):
        """Record the decision (`n`, `value`) unless a higher number was learned already. Learn messages may arrive out
        of order, so an outdated one is ignored.

        Args:
            n (ProposalNumber): number under which `value` was committed.
            value: the committed value.

        Returns:
            bool: True if the decision was recorded.
        """
        with self.lock:
            if n < self.learned_n:
                logger.debug('learner %s: ignore outdated learn %s < %s', self.node_id, n, self.learned_n)
                return False

            if self.store is not None:
                self.store.put(learned_n=n.to_list(), learned_value=value)
            self.learned_n = n
            self.learned_value = value
            logger.info('learner %s: learned %r (%s)', self.node_id, value, n)
            return True

    @property
    def decision(self):
        """
        Returns:
            Committed: the learned decision or None if nothing was learned yet.
        """
        if self.learned_n == NO_PROPOSAL:
            return None
        return Committed(self.learned_n, self.learned_value)


class QuorumCollector:
    """Collects the responses of one phase (fan-in). `deferred` fires with the collector itself as soon as `quorum`
    positive responses arrived, as soon as a quorum became unreachable, or once every request was answered, failed or
    timed out. Responses arriving after that are still recorded but do not fire `deferred` again.

    Args:
        requests (list): Deferreds of the requests sent to all peers.
        quorum (int): number of positive responses needed.

    Attributes:
        positive (list): Promise or Accepted responses.
        rejects (list): Reject responses.
        missing (int): number of requests that failed or timed out.
    """
    def __init__(self, requests, quorum):
        self.quorum = quorum
        self.positive = []
        self.rejects = []
        self.missing = 0
        self.pending = len(requests)
        self.deferred = defer.Deferred()

        for d in requests:
            d.addCallbacks(self.response_received, self.request_failed)
        self.check()

    @property
    def reached_quorum(self):
        return len(self.positive) >= self.quorum

    def response_received(self, response):
        self.pending -= 1
        if isinstance(response, Reject):
            self.rejects.append(response)
        else:
            self.positive.append(response)
        self.check()

    def request_failed(self, failure):
        logger.debug('no response: %s', failure.getErrorMessage())
        self.pending -= 1
        self.missing += 1
        self.check()

    def check(self):
        if self.deferred.called:
            return
        if self.reached_quorum or len(self.positive) + self.pending < self.quorum:
            self.deferred.callback(self)


def select_value(promises, candidate_value):
    """Select the value of a round. A value already accepted by one of the promising acceptors must be proposed again,
    the one with the highest accepted number wins. Only if no acceptor accepted anything, `candidate_value` is used.

    Args:
        promises (list): Promise responses of the prepare phase.
        candidate_value: the value the proposer wants to commit.

    Returns:
        the value to send in the accept phase.
    """
    highest = None
    for promise in promises:
        if promise.accepted_n != NO_PROPOSAL and (highest is None or highest.accepted_n < promise.accepted_n):
            highest = promise

    if highest is None:
        return candidate_value
    return highest.accepted_value


class Proposer:
    """Proposer role of a node for one or more rounds.

    Args:
        node_id (int): id of the proposing node.
        numbers (ProposalNumberGenerator): proposal number generator of the node.
        acceptors (list): peers offering `prepare` and `accept` (see PaxosNetwork), the node itself included.
        learners (list): peers offering `learn`.
        quorum (int): number of acceptors forming a majority.
        reactor (IReactorTime): used for timeouts and backoff. Must be parametrized for testing (default = global
            reactor).
        max_attempts (int): max number of prepare attempts per round (at least 1), None retries forever.
        timeout (float): max time to wait for a single response, None waits forever.
        backoff (float): base of the randomized exponential backoff between prepare attempts.
    """
    def __init__(self, node_id, numbers, acceptors, learners, quorum, reactor=reactor,
                 max_attempts=config.MAX_PREPARE_ATTEMPTS, timeout=config.RESPONSE_TIMEOUT,
                 backoff=config.RETRY_BACKOFF):
        if max_attempts is not None and max_attempts < 1:
            raise ValueError('max_attempts must be at least 1, got %r' % max_attempts)

        self.node_id = node_id
        self.numbers = numbers
        self.acceptors = acceptors
        self.learners = learners
        self.quorum = quorum
        self.reactor = reactor
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff = backoff

    @defer.inlineCallbacks
    def run_round(self, candidate_value):
        """Try to commit `candidate_value` (or the value that may already be chosen).

        Args:
            candidate_value: value to propose if no acceptor accepted a value yet.

        Returns:
            Deferred: fires with Committed or QuorumFailed.
        """
        attempts = 0
        n = None
        while self.max_attempts is None or attempts < self.max_attempts:
            attempts += 1
            n = self.numbers.next()
            logger.debug('node %s: prepare phase, attempt %s with %s', self.node_id, attempts, n)

            prepare = yield self.prepare_phase(n)
            if not prepare.reached_quorum:
                logger.debug('node %s: %s promises for %s, quorum = %s', self.node_id, len(prepare.positive), n,
                             self.quorum)
                yield self.wait_backoff(attempts)
                continue

            value = select_value(prepare.positive, candidate_value)
            if value != candidate_value:
                logger.debug('node %s: adopt previously accepted value %r', self.node_id, value)

            accept = yield self.accept_phase(n, value)
            if not accept.reached_quorum:
                logger.debug('node %s: %s acks for %s, quorum = %s', self.node_id, len(accept.positive), n,
                             self.quorum)
                return QuorumFailed(ACCEPT, n, attempts)

            logger.info('node %s: committed %r with %s', self.node_id, value, n)
            yield self.learn_phase(n, value)
            return Committed(n, value)

        logger.warning('node %s: no prepare quorum after %s attempts, giving up the round', self.node_id, attempts)
        return QuorumFailed(PREPARE, n, attempts)

    def prepare_phase(self, n):
        requests = [self.send(peer.prepare, n) for peer in self.acceptors]
        collector = QuorumCollector(requests, self.quorum)
        collector.deferred.addCallback(self.observe_rejects)
        return collector.deferred

    def accept_phase(self, n, value):
        requests = [self.send(peer.accept, n, value) for peer in self.acceptors]
        collector = QuorumCollector(requests, self.quorum)
        collector.deferred.addCallback(self.observe_rejects)
        return collector.deferred

    def learn_phase(self, n, value):
        requests = [self.send(peer.learn, n, value) for peer in self.learners]
        for d in requests:
            d.addErrback(self.learn_failed)
        return defer.DeferredList(requests)

    def send(self, method, *args):
        d = defer.maybeDeferred(method, *args)
        if self.timeout is not None:
            d.addTimeout(self.timeout, self.reactor)
        return d

    def observe_rejects(self, collector):
        """Raise the next proposal number above every promise reported by a reject received so far."""
        for reject in collector.rejects:
            self.numbers.observe(reject.promised_n)
        return collector

    def wait_backoff(self, attempts):
        if not self.backoff:
            return defer.succeed(None)
        delay = random.uniform(0, min(config.MAX_RETRY_BACKOFF, self.backoff * 2 ** (attempts - 1)))
        return deferLater(self.reactor, delay, lambda: None)

    @staticmethod
    def learn_failed(failure):
        logger.warning('learner did not acknowledge: %s', failure.getErrorMessage())


class Node:
    """A node that can act as acceptor and as proposer. The role is a capability, not a fixed identity.

    Args:
        node_id (int): unique id of the node.
        store (StateStore): optional durable state of the node.

    Attributes:
        acceptor (Acceptor): the acceptor role, owns the promise/accept state.
        numbers (ProposalNumberGenerator): numbers used whenever this node proposes.
    """
    def __init__(self, node_id, store=None):
        self.node_id = node_id
        self.store = store
        self.acceptor = Acceptor(node_id, store)
        self.numbers = ProposalNumberGenerator(node_id, store)

    def prepare(self, n):
        return self.acceptor.prepare(n)

    def accept(self, n, value):
        return self.acceptor.accept(n, value)

    @property
    def state(self):
        return self.acceptor.state

    def proposer(self, acceptors, learners, quorum, **kwargs):
        """Take the proposer role.

        Args:
            acceptors (list): peers of all acceptor nodes (including this node).
            learners (list): peers of all learner nodes.
            quorum (int): quorum size of the cluster.
            **kwargs: passed on to Proposer (reactor, max_attempts, timeout, backoff).

        Returns:
            Proposer: proposer acting on behalf of this node.
        """
        return Proposer(self.node_id, self.numbers, acceptors, learners, quorum, **kwargs)
