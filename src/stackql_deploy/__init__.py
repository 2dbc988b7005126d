"""stackql-deploy - declarative infrastructure provisioning with StackQL."""

from .build import Provisioner as Provisioner
from .client import StackQLClient as StackQLClient
from .context import Context as Context
from .errors import ConfigurationError as ConfigurationError
from .errors import ConvergenceError as ConvergenceError
from .errors import DeployError as DeployError
from .errors import ExecutionError as ExecutionError
from .errors import InvariantViolation as InvariantViolation
from .errors import TemplateRenderError as TemplateRenderError
from .manifest import Manifest as Manifest
from .manifest import Resource as Resource
from .manifest import load_manifest as load_manifest
from .teardown import Deprovisioner as Deprovisioner
from .templating import Renderer as Renderer
from .validator import StackValidator as StackValidator
