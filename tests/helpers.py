import stat
from unittest import mock


def sftp_attr(name, directory=False):
    attr = mock.Mock()
    attr.filename = name
    attr.st_mode = (stat.S_IFDIR | 0o755) if directory else (stat.S_IFREG | 0o644)
    return attr


def exec_channel(output=b"", exit_status=0):
    """
        A session channel as opened by Transport.open_session, with the combined output of its command.
    """

    channel = mock.Mock()
    channel.makefile.return_value.read.return_value = output
    channel.recv_exit_status.return_value = exit_status
    return channel


def queue_channels(ssh_client, *channels):
    """
        Makes the next sessions opened on the mocked SSHClient return the given channels, in order.
    """

    ssh_client.get_transport.return_value.open_session.side_effect = list(channels)
