from piSynod.messages import ProposalNumber, NO_PROPOSAL, Promise, Accepted, Reject
from piSynod.PaxosLogic import Acceptor, Learner, Proposer, Node, Committed, QuorumFailed
from piSynod.PaxosCluster import Cluster, new_cluster, quorum, RoleError, AgreementError
