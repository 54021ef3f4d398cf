from twisted.trial import unittest
from twisted.internet import defer, task
from twisted.internet.error import ConnectionLost
from twisted.internet.protocol import connectionDone
from twisted.internet.testing import StringTransport
from twisted.test import iosim

import struct

from piSynod import messages
from piSynod.messages import ProposalNumber, NO_PROPOSAL, Prepare, Promise, Accept, Accepted, Reject, Learn, \
    LearnAck
from piSynod.PaxosLogic import Node, Learner, Committed
from piSynod.PaxosNetwork import Connection, RemotePeer, PaxosServerFactory

import logging
logging.disable(logging.CRITICAL)


def responses(transport):
    """Split the bytes written to `transport` into messages."""
    data = transport.value()
    msgs = []
    while data:
        length = struct.unpack('!I', data[:4])[0]
        msgs.append(messages.unserialize(data[4:4 + length]))
        data = data[4 + length:]
    return msgs


def request(msg, request_id):
    msg.request_id = request_id
    return msg.serialize()


class TestConnection(unittest.TestCase):

    def setUp(self):
        """Will be called by unittest before each test method and is used for setup purposes.

        """
        self.node = Node(0)
        self.proto = PaxosServerFactory(self.node).buildProtocol(('localhost', 0))

        # mock the transport -> we do not setup a real connection
        self.transport = StringTransport()
        self.proto.makeConnection(self.transport)

    def test_prepare(self):
        """Test receipt of a Prepare message.

        """
        n = ProposalNumber(1, 2)
        self.proto.stringReceived(request(Prepare(n), 7))

        msg = responses(self.transport)[0]
        self.assertEqual(type(msg), Promise)
        self.assertEqual(msg.request_id, 7)
        self.assertEqual(msg.accepted_n, NO_PROPOSAL)
        self.assertEqual(self.node.acceptor.promised_n, n)

    def test_accept(self):
        """Test receipt of an Accept message after a Prepare message with a higher number.

        """
        self.proto.stringReceived(request(Prepare(ProposalNumber(2, 1)), 1))
        self.proto.stringReceived(request(Accept(ProposalNumber(1, 1), 'v'), 2))
        self.proto.stringReceived(request(Accept(ProposalNumber(2, 1), 'w'), 3))

        msgs = responses(self.transport)
        self.assertEqual([type(msg) for msg in msgs], [Promise, Reject, Accepted])
        self.assertEqual(msgs[1].promised_n, ProposalNumber(2, 1))
        self.assertEqual(self.node.acceptor.accepted_value, 'w')

    def test_learn_on_acceptor(self):
        """An acceptor node does not learn.

        """
        self.proto.stringReceived(request(Learn(ProposalNumber(1, 0), 'v'), 1))

        msg = responses(self.transport)[0]
        self.assertEqual(msg, LearnAck(False))

    def test_learner(self):
        """A learner node learns but refuses to act as an acceptor.

        """
        learner = Learner(3)
        proto = PaxosServerFactory(learner).buildProtocol(('localhost', 0))
        transport = StringTransport()
        proto.makeConnection(transport)

        proto.stringReceived(request(Prepare(ProposalNumber(1, 0)), 1))
        proto.stringReceived(request(Accept(ProposalNumber(1, 0), 'v'), 2))
        proto.stringReceived(request(Learn(ProposalNumber(1, 0), 'v'), 3))

        msgs = responses(transport)
        self.assertEqual([type(msg) for msg in msgs], [Reject, Reject, LearnAck])
        self.assertTrue(msgs[2].learned)
        self.assertEqual(learner.learned_value, 'v')

    def test_malformed_message(self):
        self.proto.stringReceived(b'XYZ123')
        self.assertEqual(self.transport.value(), b'')


class TestRemotePeer(unittest.TestCase):

    def setUp(self):
        self.proto = Connection()
        self.transport = StringTransport()
        self.proto.makeConnection(self.transport)
        self.peer = RemotePeer(self.proto)

    def test_prepare(self):
        n = ProposalNumber(1, 0)
        d = self.peer.prepare(n)

        msg = responses(self.transport)[0]
        self.assertEqual(msg, Prepare(n))
        self.assertNoResult(d)

        self.proto.stringReceived(request(Promise(n, NO_PROPOSAL, None), msg.request_id))
        self.assertEqual(self.successResultOf(d), Promise(n, NO_PROPOSAL, None))
        self.assertEqual(self.proto.pending, {})

    def test_responses_are_matched_by_request_id(self):
        n = ProposalNumber(1, 0)
        d1 = self.peer.accept(n, 'a')
        d2 = self.peer.accept(n, 'b')
        first, second = responses(self.transport)

        self.proto.stringReceived(request(Accepted(n, 'b'), second.request_id))
        self.assertNoResult(d1)
        self.assertEqual(self.successResultOf(d2).value, 'b')

    def test_learn(self):
        d = self.peer.learn(ProposalNumber(1, 0), 'v')
        msg = responses(self.transport)[0]

        self.proto.stringReceived(request(LearnAck(True), msg.request_id))
        self.assertIs(self.successResultOf(d), True)

    def test_cancel(self):
        d = self.peer.prepare(ProposalNumber(1, 0))
        msg = responses(self.transport)[0]
        d.cancel()

        self.failureResultOf(d, defer.CancelledError)
        self.assertEqual(self.proto.pending, {})

        # a late response is ignored
        self.proto.stringReceived(request(Promise(msg.proposal_number, NO_PROPOSAL, None), msg.request_id))

    def test_connection_lost(self):
        d = self.peer.accept(ProposalNumber(1, 0), 'v')
        self.proto.connectionLost(connectionDone)

        self.failureResultOf(d, ConnectionLost)


class TestRemoteRound(unittest.TestCase):
    """A whole round over (fake) TCP connections."""

    def setUp(self):
        self.clock = task.Clock()
        self.nodes = [Node(i) for i in range(3)]
        self.learner = Learner(3)
        self.pumps = []

        peers = []
        for target in self.nodes + [self.learner]:
            server = PaxosServerFactory(target).buildProtocol(None)
            client = Connection()
            self.pumps.append(iosim.connect(server, iosim.makeFakeServer(server),
                                            client, iosim.makeFakeClient(client)))
            peers.append(RemotePeer(client))

        self.proposer = self.nodes[0].proposer(peers[:3], peers[3:], 2, reactor=self.clock, timeout=None)

    def flush(self):
        for _ in range(5):
            for pump in self.pumps:
                pump.flush()

    def test_round(self):
        d = self.proposer.run_round('v')
        self.flush()

        self.assertEqual(self.successResultOf(d), Committed(ProposalNumber(1, 0), 'v'))
        for node in self.nodes:
            self.assertEqual(node.acceptor.accepted_value, 'v')
        self.assertEqual(self.learner.learned_value, 'v')
