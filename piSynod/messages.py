"""This module defines proposal numbers and the representation of all objects that are exchanged between proposers,
acceptors and learners. Every message can be serialized s.t it can be sent over the network.

Each serialized message starts with a three character prefix identifying its type, followed by a cbor encoded list.
"""

import functools

import cbor


@functools.total_ordering
class ProposalNumber:
    """A cluster-wide unique and totally ordered proposal number.

    Two nodes never generate equal numbers because the id of the generating node breaks ties between equal counters.

    Args:
        counter (int): per node counter, starting at 1 for valid numbers.
        node_id (int): id of the node that generated the number.
    """
    def __init__(self, counter, node_id):
        self.counter = counter
        self.node_id = node_id

    def __lt__(self, other):
        return (self.counter, self.node_id) < (other.counter, other.node_id)

    def __eq__(self, other):
        if not isinstance(other, ProposalNumber):
            return NotImplemented
        return self.counter == other.counter and self.node_id == other.node_id

    def __hash__(self):
        return hash((self.counter, self.node_id))

    def __repr__(self):
        return 'ProposalNumber(%s, %s)' % (self.counter, self.node_id)

    def to_list(self):
        return [self.counter, self.node_id]

    @staticmethod
    def from_list(obj_list):
        return ProposalNumber(obj_list[0], obj_list[1])


# sentinel that is lower than any valid proposal number
NO_PROPOSAL = ProposalNumber(-1, -1)


class Message:
    """Base class of all messages.

    Attributes:
        request_id (int): set by the network layer to match a response with its request. None for in-process calls.
    """
    PREFIX = None

    request_id = None

    def fields(self):
        raise NotImplementedError("To be implemented in subclass")

    def serialize(self):
        """
        Returns (bytes): bytes representing the object.
        """
        obj_list = self.fields() + [self.request_id]
        return self.PREFIX + cbor.dumps(obj_list)

    @classmethod
    def unserialize(cls, msg):
        """
        Args:
            msg (bytes): message represented in bytes.

        Returns:
             Message: original message instance.
        """
        obj_list = cbor.loads(msg[3:])
        request_id = obj_list.pop()
        obj = cls.from_fields(obj_list)
        setattr(obj, 'request_id', request_id)
        return obj

    @classmethod
    def from_fields(cls, obj_list):
        raise NotImplementedError("To be implemented in subclass")

    def __eq__(self, other):
        return type(self) is type(other) and self.fields() == other.fields()

    def __repr__(self):
        return '%s(%s)' % (type(self).__name__, ', '.join(repr(f) for f in self.fields()))


class Prepare(Message):
    """Phase 1a: a proposer asks an acceptor to promise `proposal_number`.

    Args:
        proposal_number (ProposalNumber): number of the round.
    """
    PREFIX = b'PRE'

    def __init__(self, proposal_number):
        self.proposal_number = proposal_number

    def fields(self):
        return [self.proposal_number.to_list()]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(ProposalNumber.from_list(obj_list[0]))


class Promise(Message):
    """Phase 1b: an acceptor promised `proposal_number` and reports what it has accepted so far.

    Args:
        proposal_number (ProposalNumber): the promised number.
        accepted_n (ProposalNumber): number of the accepted value or `NO_PROPOSAL`.
        accepted_value: the accepted value or None.
    """
    PREFIX = b'PRM'

    def __init__(self, proposal_number, accepted_n, accepted_value):
        self.proposal_number = proposal_number
        self.accepted_n = accepted_n
        self.accepted_value = accepted_value

    def fields(self):
        return [self.proposal_number.to_list(), self.accepted_n.to_list(), self.accepted_value]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(ProposalNumber.from_list(obj_list[0]), ProposalNumber.from_list(obj_list[1]), obj_list[2])


class Accept(Message):
    """Phase 2a: a proposer asks an acceptor to accept `value` under `proposal_number`.

    Args:
        proposal_number (ProposalNumber): number of the round.
        value: the value selected by the proposer.
    """
    PREFIX = b'ACC'

    def __init__(self, proposal_number, value):
        self.proposal_number = proposal_number
        self.value = value

    def fields(self):
        return [self.proposal_number.to_list(), self.value]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(ProposalNumber.from_list(obj_list[0]), obj_list[1])


class Accepted(Message):
    """Phase 2b: an acceptor accepted `value` under `proposal_number`.

    Args:
        proposal_number (ProposalNumber): the accepted number.
        value: the accepted value.
    """
    PREFIX = b'ACK'

    def __init__(self, proposal_number, value):
        self.proposal_number = proposal_number
        self.value = value

    def fields(self):
        return [self.proposal_number.to_list(), self.value]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(ProposalNumber.from_list(obj_list[0]), obj_list[1])


class Reject(Message):
    """An acceptor refused a Prepare or Accept because it already promised a higher number.

    Args:
        proposal_number (ProposalNumber): the rejected number.
        promised_n (ProposalNumber): the number the acceptor promised instead.
    """
    PREFIX = b'REJ'

    def __init__(self, proposal_number, promised_n):
        self.proposal_number = proposal_number
        self.promised_n = promised_n

    def fields(self):
        return [self.proposal_number.to_list(), self.promised_n.to_list()]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(ProposalNumber.from_list(obj_list[0]), ProposalNumber.from_list(obj_list[1]))


class Learn(Message):
    """Commit: tells a learner that `value` was accepted by a quorum under `proposal_number`.

    Args:
        proposal_number (ProposalNumber): number of the committed round.
        value: the committed value.
    """
    PREFIX = b'LRN'

    def __init__(self, proposal_number, value):
        self.proposal_number = proposal_number
        self.value = value

    def fields(self):
        return [self.proposal_number.to_list(), self.value]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(ProposalNumber.from_list(obj_list[0]), obj_list[1])


class LearnAck(Message):
    """Response to a Learn message.

    Args:
        learned (bool): False if the learner ignored the message (outdated or not a learner).
    """
    PREFIX = b'LAK'

    def __init__(self, learned):
        self.learned = learned

    def fields(self):
        return [self.learned]

    @classmethod
    def from_fields(cls, obj_list):
        return cls(obj_list[0])


MESSAGE_TYPES = {cls.PREFIX: cls for cls in (Prepare, Promise, Accept, Accepted, Reject, Learn, LearnAck)}


def unserialize(msg):
    """Reconstruct a message of any type from its bytes.

    Args:
        msg (bytes): serialized message.

    Returns:
        Message: the message instance.

    Raises:
        ValueError: if the type prefix is unknown.
    """
    cls = MESSAGE_TYPES.get(bytes(msg[:3]))
    if cls is None:
        raise ValueError('unknown message type %r' % msg[:3])
    return cls.unserialize(msg)
