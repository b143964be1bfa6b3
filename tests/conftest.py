from botocore.exceptions import ClientError


class FakeSession:
    """Stands in for boto3.Session, handing out pre-built fake clients."""

    def __init__(self, **clients):
        self.clients = clients
        self.requested = []

    def client(self, name, **kwargs):
        self.requested.append(name)
        return self.clients[name]


def client_error(code, operation="Operation", message="boom"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


