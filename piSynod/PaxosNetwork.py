"""This module implements the communication between proposers and the acceptors and learners they talk to.

A proposer only relies on peers offering `prepare(n)`, `accept(n, value)` and `learn(n, value)`, each returning a
Deferred. `LocalPeer` provides them for nodes living in the same process, `RemotePeer` for nodes reached over TCP.
"""

import itertools
import logging

from twisted.internet import defer, reactor
from twisted.internet.endpoints import TCP4ClientEndpoint, TCP4ServerEndpoint, connectProtocol
from twisted.internet.error import ConnectionLost
from twisted.internet.protocol import Factory, connectionDone
from twisted.protocols.basic import Int32StringReceiver

from piSynod import config
from piSynod import messages
from piSynod.messages import NO_PROPOSAL, Prepare, Accept, Learn, LearnAck, Reject


logger = logging.getLogger(__name__)


class LocalPeer:
    """In-process peer. Calls the acceptor or learner of `target` directly.

    Args:
        target (Node or Learner): the node served by this peer.
        reactor (IReactorTime): used to delay responses. Must be parametrized for testing (default = global reactor).

    Attributes:
        delay (float): time until the target handles a request, 0 handles it immediately.
        down (bool): if True the target never responds (simulates a crashed node or a lost message).
    """
    def __init__(self, target, reactor=reactor):
        self.target = target
        self.reactor = reactor
        self.delay = 0
        self.down = False

    def prepare(self, n):
        return self.call('prepare', n)

    def accept(self, n, value):
        return self.call('accept', n, value)

    def learn(self, n, value):
        return self.call('learn', n, value)

    def call(self, method_name, *args):
        if self.down:
            return defer.Deferred()

        method = getattr(self.target, method_name)
        if not self.delay:
            return defer.maybeDeferred(method, *args)

        # a timeout on the returned Deferred does not cancel the request, the target still handles it late
        d = defer.Deferred()
        self.reactor.callLater(self.delay, self.respond, d, method, *args)
        return d

    @staticmethod
    def respond(d, method, *args):
        result = defer.maybeDeferred(method, *args)
        if not d.called:
            result.chainDeferred(d)
        else:
            result.addErrback(lambda failure: logger.debug('late request failed: %s', failure.getErrorMessage()))


class Connection(Int32StringReceiver):
    """This class keeps track of a connection with another node. Each received string becomes a callback to the method
    `stringReceived`.

    Both sides of a connection can send requests: the node on the other side is served with the node of this side
    (`factory.node`), and requests sent by this side are matched with their responses by `request_id`.

    Args:
        factory (PaxosServerFactory): the factory that created the connection, None for outgoing connections of a
            proposer that serves nothing.

    Attributes:
        pending (dict): request_id -> Deferred waiting for the response.
    """
    def __init__(self, factory=None):
        self.factory = factory
        self.pending = {}
        self.request_ids = itertools.count(1)
        self.MAX_LENGTH = config.MAX_MESSAGE_LENGTH

    def connectionMade(self):
        logger.debug('Connected to %s.', str(self.transport.getPeer()))

    def connectionLost(self, reason=connectionDone):
        logger.debug('Lost connection to %s: %s', str(self.transport.getPeer()), reason.getErrorMessage())

        pending = self.pending
        self.pending = {}
        for d in pending.values():
            d.errback(ConnectionLost(reason.getErrorMessage()))

    def stringReceived(self, string):
        """Callback that is called as soon as a complete message is available.

        Args:
            string (bytes): the message, starting with its three character type prefix.
        """
        try:
            msg = messages.unserialize(string)
        except Exception as e:
            logger.warning('drop malformed message: %s', e)
            return

        if isinstance(msg, (Prepare, Accept, Learn)):
            self.handle_request(msg)
        else:
            self.handle_response(msg)

    def handle_request(self, msg):
        node = self.factory.node if self.factory is not None else None

        if isinstance(msg, Prepare):
            if hasattr(node, 'prepare'):
                response = node.prepare(msg.proposal_number)
            else:
                response = Reject(msg.proposal_number, NO_PROPOSAL)
        elif isinstance(msg, Accept):
            if hasattr(node, 'accept'):
                response = node.accept(msg.proposal_number, msg.value)
            else:
                response = Reject(msg.proposal_number, NO_PROPOSAL)
        else:
            if hasattr(node, 'learn'):
                response = LearnAck(node.learn(msg.proposal_number, msg.value))
            else:
                response = LearnAck(False)

        if isinstance(response, Reject) and response.promised_n == NO_PROPOSAL:
            logger.warning('node does not serve %s requests', type(msg).__name__)

        response.request_id = msg.request_id
        self.sendString(response.serialize())

    def handle_response(self, msg):
        d = self.pending.pop(msg.request_id, None)
        if d is None:
            # outdated response (request timed out or was cancelled)
            logger.debug('no pending request with id %s', msg.request_id)
            return
        d.callback(msg)

    def send_request(self, msg):
        """Send `msg` and return a Deferred that fires with the response.

        Args:
            msg (Message): Prepare, Accept or Learn message.

        Returns:
            Deferred: fires with the response message. Cancelling it forgets the request.
        """
        request_id = next(self.request_ids)
        msg.request_id = request_id
        d = defer.Deferred(lambda _: self.pending.pop(request_id, None))
        self.pending[request_id] = d
        self.sendString(msg.serialize())
        return d


class RemotePeer:
    """Peer reached over a `Connection`. Offers the same interface as `LocalPeer`.

    Args:
        connection (Connection): an established connection.
    """
    def __init__(self, connection):
        self.connection = connection

    def prepare(self, n):
        return self.connection.send_request(Prepare(n))

    def accept(self, n, value):
        return self.connection.send_request(Accept(n, value))

    def learn(self, n, value):
        d = self.connection.send_request(Learn(n, value))
        d.addCallback(lambda ack: ack.learned)
        return d


class PaxosServerFactory(Factory):
    """Serves the acceptor or learner role of `node` to remote proposers.

    Args:
        node (Node or Learner): the local node.
    """
    def __init__(self, node):
        self.node = node

    def buildProtocol(self, addr):
        return Connection(self)

    def listen(self, port, reactor=reactor):
        """Start listening on `port`.

        Returns:
            Deferred: fires with the listening port.
        """
        endpoint = TCP4ServerEndpoint(reactor, port)
        d = endpoint.listen(self)
        d.addCallback(self.listening, port)
        return d

    def listening(self, listening_port, port):
        logger.info('node %s listening on port %s', self.node.node_id, port)
        return listening_port


def connect(host, port, reactor=reactor):
    """Connect to the node listening on `host`:`port`.

    Returns:
        Deferred: fires with a RemotePeer.
    """
    point = TCP4ClientEndpoint(reactor, host, port)
    d = connectProtocol(point, Connection())
    d.addCallback(RemotePeer)
    return d
