from .argocd_client import ArgoCDClient
from .console_client import ConsoleClient, ConsoleSession
from .kube_client import JobStatus, KubeClient, StatefulSetStatus
from .upload_sink import DirectoryUploadSink, HttpUploadSink, UploadSink, create_sink
