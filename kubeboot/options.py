"""命令行标志名称。

阶段通过这些名称声明要从工作流命令继承的标志。
"""

CFG_PATH = "config"
IGNORE_PREFLIGHT_ERRORS = "ignore-preflight-errors"
DRY_RUN = "dry-run"
KUBECONFIG_PATH = "kubeconfig"
KUBECONFIG_DIR = "kubeconfig-dir"
CERTIFICATES_DIR = "cert-dir"
KUBERNETES_VERSION = "kubernetes-version"
NODE_NAME = "node-name"
NODE_CRI_SOCKET = "cri-socket"
APISERVER_ADVERTISE_ADDRESS = "apiserver-advertise-address"
APISERVER_BIND_PORT = "apiserver-bind-port"
APISERVER_CERT_SANS = "apiserver-cert-extra-sans"
CONTROL_PLANE_ENDPOINT = "control-plane-endpoint"
NETWORKING_SERVICE_SUBNET = "service-cidr"
NETWORKING_POD_SUBNET = "pod-network-cidr"
NETWORKING_DNS_DOMAIN = "service-dns-domain"
IMAGE_REPOSITORY = "image-repository"
TOKEN_STR = "token"
TOKEN_TTL = "token-ttl"
UPLOAD_CERTS = "upload-certs"
CERTIFICATE_KEY = "certificate-key"
SKIP_CERTIFICATE_KEY_PRINT = "skip-certificate-key-print"
SKIP_TOKEN_PRINT = "skip-token-print"
FORCE_RESET = "force"
CONTROL_PLANE = "control-plane"
FILE_DISCOVERY = "discovery-file"
TOKEN_DISCOVERY = "discovery-token"
TOKEN_DISCOVERY_CA_HASH = "discovery-token-ca-cert-hash"
TOKEN_DISCOVERY_SKIP_CA_HASH = "discovery-token-unsafe-skip-ca-verification"
TLS_BOOTSTRAP_TOKEN = "tls-bootstrap-token"
