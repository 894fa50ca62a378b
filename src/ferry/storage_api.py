class StorageAPI(object):
    """
    Contract for how code records finished transfers.
    Implementation can use SQLite, files, etc.,
    but must keep the same method names and parameters.
    """

    def save_transfer(self, transfer_dict):
        raise NotImplementedError()

    def load_transfer(self, transfer_id):
        raise NotImplementedError()

    def list_transfers(self):
        raise NotImplementedError()

    def list_transfers_by_state(self, state):
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()
