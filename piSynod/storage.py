"""This module implements the durable state of a node. Acceptors, learners and proposal number generators write their
state through to a LevelDB database s.t promises and accepted values survive a crash."""

import logging
import os

import jsonpickle
import plyvel

from piSynod import config


logger = logging.getLogger(__name__)


class StateStore:
    """Key value store of a single node backed by LevelDB. Values are encoded with jsonpickle, so arbitrary python
    objects (including proposal numbers) can be stored.

    Args:
        node_index (int): index of the node owning this store (to avoid concurrency problems with mult. local nodes).
        base_path (str): directory containing the databases of all nodes. Defaults to `config.DB_BASE_PATH`.

    Attributes:
        path (str): location of the database of this node.
        db (plyvel.DB): the database instance.
    """
    def __init__(self, node_index, base_path=None):
        base_path = os.path.expanduser(base_path or config.DB_BASE_PATH)
        self.path = os.path.join(base_path, 'node_' + str(node_index))
        if not os.path.exists(self.path):
            os.makedirs(self.path)
        self.db = plyvel.DB(self.path, create_if_missing=True)

    def get(self, key, default=None):
        """
        Args:
            key (str): name of the stored field.
            default: returned if the field was never written.

        Returns:
            the decoded value.
        """
        value = self.db.get(key.encode())
        if value is None:
            return default
        return jsonpickle.decode(value.decode())

    def put(self, **fields):
        """Write all `fields` atomically, either all of them are on disk afterwards or none is.

        Args:
            **fields: field name -> value.
        """
        with self.db.write_batch(sync=True) as wb:
            for key, value in fields.items():
                wb.put(key.encode(), jsonpickle.encode(value).encode())

    def close(self):
        if not self.db.closed:
            logger.debug('close db at %s', self.path)
            self.db.close()
