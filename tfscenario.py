# Copyright 2019 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Scenario harness for Terraform module tests.

Three scenarios are provided, each running one case at a time against one or
more module directories:

  DryScenario: init, validate and plan, then compare planned resource
    addresses against an expected list. Nothing is applied.
  UnitScenario: init and apply a single module twice to check idempotency,
    then destroy it.
  IntegrationScenario: apply a list of modules in order, wiring outputs of
    each module into the variables of the next one, then destroy them in
    reverse order.

Every module directory gets a temporary provider file for the duration of
the case, and every acquisition registers its release on a cleanup stack
that is drained whatever the outcome of the case.
"""

import collections
import difflib
import itertools
import json
import logging
import os
import re
import shutil
import subprocess
import sys
import threading

from typing import List

import hcl2

__version__ = '0.3.0'

_LOGGER = logging.getLogger('tfscenario')

TerraformCommandOutput = collections.namedtuple('TerraformCommandOutput',
                                                'retcode out err')

Wire = collections.namedtuple('Wire', 'output input')

DEFAULT_WIRES = (Wire('subnet_id', 'virtual_network_id'),)

DryCase = collections.namedtuple('DryCase', 'name input want plan_out',
                                 defaults=((), 'tfscenario.tfplan'))

UnitCase = collections.namedtuple('UnitCase', 'name input')

IntegrationCase = collections.namedtuple('IntegrationCase',
                                         'name inputs wires',
                                         defaults=(None,))


class TerraformTestError(Exception):

  @property
  def cmd_error(self):
    return self.args[1] if len(self.args) > 1 else None


class TerraformDecodeError(TerraformTestError):
  "Malformed or incomplete JSON returned by Terraform."


class ScenarioFailure(TerraformTestError):
  "A scenario case did not pass."


def format_hcl_value(value):
  """Render a Python value as a Terraform expression.

  Strings are quoted, maps use the `key = value` object syntax and lists the
  tuple syntax, nested at any depth.
  """
  if isinstance(value, bool):
    return 'true' if value else 'false'
  if value is None:
    return 'null'
  if isinstance(value, (int, float)):
    return str(value)
  if isinstance(value, str):
    return json.dumps(value)
  if isinstance(value, dict):
    return '{%s}' % ', '.join('%s = %s' % (json.dumps(str(k)),
                                           format_hcl_value(v))
                              for k, v in value.items())
  if isinstance(value, (list, tuple)):
    return '[%s]' % ', '.join(format_hcl_value(v) for v in value)
  raise TypeError('unsupported variable value type %s' % type(value).__name__)


def format_var_value(value):
  """Convert a variable value to its command line form.

  Top-level strings are passed as is, everything else is rendered as an
  expression Terraform parses according to the variable type.
  """
  if isinstance(value, str):
    return value
  return format_hcl_value(value)


def _hcl_literal(value):
  "Quote strings so that hcl2 writes them as string literals."
  if isinstance(value, str):
    return json.dumps(value)
  if isinstance(value, dict):
    return dict((k, _hcl_literal(v)) for k, v in value.items())
  if isinstance(value, (list, tuple)):
    return [_hcl_literal(v) for v in value]
  return value


def parse_args(tf_vars=None, **kw):
  """Convert method arguments for use in Terraform commands.

  Args:
    tf_vars: dict of key/values converted to -var k=v form.
    **kw: converted to the appropriate Terraform flag.

  Returns:
    A list of command arguments for use with subprocess.
  """
  cmd_args = []
  if kw.get('auto_approve'):
    cmd_args.append('-auto-approve')
  if kw.get('color') is False:
    cmd_args.append('-no-color')
  if kw.get('input') is False:
    cmd_args.append('-input=false')
  if kw.get('json_format') is True:
    cmd_args.append('-json')
  if kw.get('reconfigure'):
    cmd_args.append('-reconfigure')
  if kw.get('upgrade'):
    cmd_args.append('-upgrade')
  if kw.get('out'):
    cmd_args.append('-out={}'.format(kw['out']))
  if tf_vars:
    cmd_args += list(
        itertools.chain.from_iterable(
            ('-var', '{}={}'.format(k, format_var_value(v)))
            for k, v in tf_vars.items()))
  return cmd_args


def _decode(out, what, err=None):
  try:
    return json.loads(out)
  except json.JSONDecodeError as e:
    message = 'Error decoding {} output: {}'.format(what, e)
    if err:
      raise TerraformDecodeError(message, err)
    raise TerraformDecodeError(message)


class TerraformJSONBase(object):
  "Base class for JSON wrappers."

  def __init__(self, raw):
    self._raw = raw

  def __len__(self):
    return len(self._raw)

  def __str__(self):
    return str(self._raw)


class TerraformValueDict(TerraformJSONBase):
  "Minimal wrapper to directly expose outputs or variables."

  def __init__(self, raw):
    super(TerraformValueDict, self).__init__(raw)
    # only matters for outputs
    self.sensitive = tuple(k for k, v in raw.items() if v.get('sensitive'))

  def __getattr__(self, name):
    if isinstance(name, str) and name[:2] == name[-2:] == '__':
      # skip non-existing dunder method lookups
      raise AttributeError(name)
    return getattr(self._raw, name)

  def __getitem__(self, name):
    return self._raw[name].get('value')

  def __contains__(self, name):
    return name in self._raw

  def __iter__(self):
    return iter(self._raw)

  def get_output(self, name):
    """Return the value of a single output.

    Raises:
      TerraformDecodeError: the output is missing or carries no value.
    """
    entry = self._raw.get(name)
    if not isinstance(entry, dict) or 'value' not in entry:
      raise TerraformDecodeError(
          'output {} not found in {}'.format(name, sorted(self._raw)))
    return entry['value']


class TerraformPlanOutput(TerraformJSONBase):
  "Minimal wrapper for Terraform plan JSON output."

  def __init__(self, raw):
    super(TerraformPlanOutput, self).__init__(raw)
    planned_values = raw.get('planned_values', {})
    self.outputs = TerraformValueDict(planned_values.get('outputs', {}))
    self.resource_changes = dict(
        (v['address'], v) for v in raw.get('resource_changes') or [])
    # there might be no variables defined
    self.variables = TerraformValueDict(raw.get('variables', {}))

  def __getattr__(self, name):
    if name.startswith('_'):
      raise AttributeError(name)
    try:
      return self._raw[name]
    except KeyError:
      raise AttributeError(name)


class TerraformValidateOutput(TerraformJSONBase):
  "Minimal wrapper for Terraform validate JSON output."

  def __init__(self, raw):
    super(TerraformValidateOutput, self).__init__(raw)
    self.valid = bool(raw.get('valid'))
    self.error_count = raw.get('error_count', 0)
    self.warning_count = raw.get('warning_count', 0)
    self.diagnostics = raw.get('diagnostics', [])


def parse_resource_addresses(plan) -> List[str]:
  """Return resource change addresses in the order Terraform emitted them.

  Args:
    plan: a TerraformPlanOutput instance or the decoded plan JSON.
  """
  raw = plan._raw if isinstance(plan, TerraformPlanOutput) else plan
  return [change['address'] for change in raw.get('resource_changes') or []]


_SUMMARY_RE = re.compile(r'^Apply complete! Resources: (.+)$', re.M)
_CHANGES_RE = re.compile(r'(\d+) (?:added|changed|destroyed)')


def count_changes(apply_output):
  """Return the number of resources touched by an apply run."""
  summaries = _SUMMARY_RE.findall(apply_output)
  if summaries:
    return sum(int(n) for n in _CHANGES_RE.findall(summaries[-1]))
  if 'No changes.' in apply_output:
    return 0
  raise TerraformTestError(
      'Unable to find resource counts in apply output: {}'.format(
          apply_output.strip()[-200:]))


def render_diff(want, got):
  """Line diff of two address lists, empty when they are equal."""
  want, got = list(want), list(got)
  if want == got:
    return ''
  lines = []
  matcher = difflib.SequenceMatcher(a=want, b=got, autojunk=False)
  for tag, i1, i2, j1, j2 in matcher.get_opcodes():
    if tag == 'equal':
      lines += ['  %s' % a for a in want[i1:i2]]
      continue
    lines += ['- %s' % a for a in want[i1:i2]]
    lines += ['+ %s' % a for a in got[j1:j2]]
  return '\n'.join(lines)


def find_terraform(binary='terraform', path=None):
  """Return the absolute path of the Terraform binary, or None."""
  found = shutil.which(binary, path=path)
  return os.path.abspath(found) if found else None


def locate_terraform(binary='terraform'):
  """Return the absolute path of the Terraform binary, or exit the process."""
  found = find_terraform(binary)
  if found is None:
    print('lookup terraform binary: executable file "{}" not found in '
          '$PATH'.format(binary), file=sys.stderr)
    sys.exit(1)
  return found


class ProviderFile(object):
  """Temporary provider configuration file in a module directory.

  Modules under test omit their provider block so that it can be injected
  here. The file is opened at instantiation, written by create() which closes
  it, and removed by delete().

  Args:
    path: path of the file to write.
    name: provider name used as the block label.
    blocks: dict of nested block names to dicts of attributes, defaults to
      the empty `features` block azurerm requires.
  """

  def __init__(self, path, name='azurerm', blocks=None):
    self.path = os.path.abspath(path)
    self.name = name
    self.blocks = {'features': {}} if blocks is None else blocks
    try:
      fd = os.open(self.path, os.O_WRONLY | os.O_CREAT, 0o644)
    except OSError as e:
      raise TerraformTestError('could not open provided path: %s' % e)
    self._fp = os.fdopen(fd, 'w', encoding='utf-8')

  def render(self):
    doc = hcl2.Builder()
    provider = doc.block('provider', labels=[json.dumps(self.name)])
    for block, attrs in self.blocks.items():
      provider.block(block, **dict((k, _hcl_literal(v)) for k, v in
                                   (attrs or {}).items()))
    return hcl2.dumps(doc.build())

  def create(self):
    if self._fp.closed:
      raise TerraformTestError('provider file %s already written' % self.path)
    try:
      self._fp.seek(0)
      self._fp.write(self.render())
      self._fp.truncate()
    except OSError as e:
      raise TerraformTestError('could not write provider file: %s' % e)
    finally:
      self._fp.close()
    _LOGGER.debug('wrote provider %s to %s', self.name, self.path)

  def delete(self):
    if not self._fp.closed:
      self._fp.close()
    try:
      os.unlink(self.path)
    except FileNotFoundError:
      return
    _LOGGER.debug('removed %s', self.path)


class ModuleInput(object):
  """Module directory and the variables to run it with.

  Args:
    directory: the module directory, either an absolute path or relative to
      basedir.
    basedir: optional base directory for relative paths, defaults to the
      current working directory.
    reconfigure: pass -reconfigure to init.
    upgrade: pass -upgrade to init.
    tf_vars: dict of Terraform variables, values can be nested dicts and lists.
    vars_from_env: pass variables as TF_VAR_ environment variables instead of
      command line flags.
  """

  def __init__(self, directory, basedir=None, reconfigure=True, upgrade=True,
               tf_vars=None, vars_from_env=False):
    basedir = basedir or os.getcwd()
    self._directory = directory if os.path.isabs(directory) else os.path.join(
        basedir, directory)
    self._reconfigure = reconfigure
    self._upgrade = upgrade
    self._vars_from_env = vars_from_env
    self.tf_vars = dict(tf_vars or {})

  @property
  def directory(self):
    return self._directory

  @property
  def reconfigure(self):
    return self._reconfigure

  @property
  def upgrade(self):
    return self._upgrade

  @property
  def vars_from_env(self):
    return self._vars_from_env

  def tf_var_env(self):
    return dict(('TF_VAR_{}'.format(k), format_var_value(v))
                for k, v in self.tf_vars.items())

  def command_vars(self):
    """Return (tf_vars, env) to pass to a driver command."""
    if self._vars_from_env:
      return None, self.tf_var_env()
    return self.tf_vars, None

  def __repr__(self):
    return 'ModuleInput(%r, tf_vars=%r)' % (self._directory, self.tf_vars)


class TerraformDriver(object):
  """Run Terraform commands in a module directory.

  Args:
    tfdir: the Terraform module directory.
    binary: path to the Terraform command.
    env: a dict with custom environment variables to pass to terraform.
  """

  def __init__(self, tfdir, binary='terraform', env=None):
    self.tfdir = tfdir
    self.binary = binary
    self.env = os.environ.copy()
    if env is not None:
      self.env.update(env)

  def init(self, reconfigure=False, upgrade=False, color=False, input=False):
    """Run Terraform init command."""
    cmd_args = parse_args(color=color, input=input, reconfigure=reconfigure,
                          upgrade=upgrade)
    return self.execute_command('init', *cmd_args).out

  def validate(self, color=False, timeout=None):
    """Run Terraform validate command and return the parsed result.

    Invalid configurations exit non-zero but still print the JSON document,
    so the return code is not checked.
    """
    cmd_args = parse_args(color=color, json_format=True)
    result = self.execute_command('validate', *cmd_args, check=False,
                                  timeout=timeout)
    return TerraformValidateOutput(
        _decode(result.out, 'validate', result.err))

  def plan(self, out, color=False, input=False, tf_vars=None, env=None):
    """Run Terraform plan command, saving the plan to out."""
    cmd_args = parse_args(color=color, input=input, out=out, tf_vars=tf_vars)
    return self.execute_command('plan', *cmd_args, env=env).out

  def show_plan_file(self, path, timeout=None):
    """Return the parsed JSON form of a saved plan file."""
    result = self.execute_command('show', '-no-color', '-json', path,
                                  timeout=timeout)
    return TerraformPlanOutput(_decode(result.out, 'plan'))

  def apply(self, color=False, input=False, auto_approve=True, tf_vars=None,
            env=None):
    """Run Terraform apply command."""
    cmd_args = parse_args(auto_approve=auto_approve, color=color, input=input,
                          tf_vars=tf_vars)
    return self.execute_command('apply', *cmd_args, env=env).out

  def destroy(self, color=False, input=False, auto_approve=True, tf_vars=None,
              env=None):
    """Run Terraform destroy command."""
    cmd_args = parse_args(auto_approve=auto_approve, color=color, input=input,
                          tf_vars=tf_vars)
    return self.execute_command('destroy', *cmd_args, env=env).out

  def output(self, name=None, color=False):
    """Run Terraform output command and return the parsed outputs.

    With a name, only that output's decoded value is returned.
    """
    cmd_args = parse_args(color=color, json_format=True)
    if name:
      cmd_args.append(name)
    out = self.execute_command('output', *cmd_args).out
    _LOGGER.debug('output %s', out)
    if name:
      return _decode(out, 'output')
    return TerraformValueDict(_decode(out, 'output'))

  def execute_command(self, cmd, *cmd_args, check=True, timeout=None,
                      env=None):
    """Run arbitrary Terraform command."""
    _LOGGER.debug([cmd, cmd_args])
    cmdline = [self.binary, cmd, *cmd_args]
    _LOGGER.info(cmdline)
    cmd_env = self.env if not env else dict(self.env, **env)
    try:
      p = subprocess.Popen(cmdline, stdout=subprocess.PIPE,
                           stderr=subprocess.PIPE, cwd=self.tfdir, env=cmd_env,
                           universal_newlines=True, encoding='utf-8',
                           errors='ignore')
    except FileNotFoundError as e:
      raise TerraformTestError('Terraform executable not found: %s' % e)
    if timeout is not None:
      try:
        full_output, err = p.communicate(timeout=timeout)
      except subprocess.TimeoutExpired:
        p.kill()
        p.communicate()
        message = 'Timeout running command {} after {}s'.format(cmd, timeout)
        _LOGGER.critical(message)
        raise TerraformTestError(message)
      for line in full_output.splitlines():
        _LOGGER.info(line.strip())
    else:
      # stderr is drained concurrently with stdout
      err_lines = []
      reader = threading.Thread(target=err_lines.extend, args=(p.stderr,),
                                daemon=True)
      reader.start()
      full_output_lines = []
      while True:
        output = p.stdout.readline()
        if output == '' and p.poll() is not None:
          break
        if output:
          _LOGGER.info(output.strip())
          full_output_lines.append(output)
      p.wait()
      reader.join()
      p.stdout.close()
      p.stderr.close()
      err = ''.join(err_lines)
      full_output = ''.join(full_output_lines)
    retcode = p.returncode
    if check and retcode != 0:
      message = 'Error running command {command}: {retcode} {out} {err}'.format(
          command=cmd, retcode=retcode, out=full_output, err=err)
      _LOGGER.critical(message)
      raise TerraformTestError(message, err)
    return TerraformCommandOutput(retcode, full_output, err)


class CleanupStack(object):
  """Releases registered at acquisition time, run last in first out."""

  def __init__(self):
    self._callbacks = []

  def __len__(self):
    return len(self._callbacks)

  def push(self, callback, *args, **kwargs):
    self._callbacks.append((callback, args, kwargs))

  def drain(self):
    """Run all releases, returning the exceptions raised by any of them."""
    errors = []
    while self._callbacks:
      callback, args, kwargs = self._callbacks.pop()
      _LOGGER.debug('cleanup %s', getattr(callback, '__name__', callback))
      try:
        callback(*args, **kwargs)
      except Exception as e:
        _LOGGER.exception('cleanup failed: %s', e)
        errors.append(e)
    return errors


class Reporter(object):
  "Receives log and failure events from scenarios."

  def log(self, msg, *args):
    _LOGGER.info(msg, *args)

  def fail(self, msg):
    raise ScenarioFailure(msg)


class Scenario(object):
  """Base class for scenarios running one case at a time.

  Args:
    binary: path to the Terraform command, looked up in PATH when not set.
    reporter: Reporter receiving log and failure events.
    driver_factory: callable returning a driver from (tfdir, binary, env),
      defaults to TerraformDriver.
    env: a dict with custom environment variables to pass to terraform.
    provider_filename: name of the provider file written in each module.
    provider_name: provider block label.
    provider_blocks: nested provider blocks, see ProviderFile.
  """

  def __init__(self, binary=None, reporter=None, driver_factory=None,
               env=None, provider_filename='provider.tf',
               provider_name='azurerm', provider_blocks=None):
    self.binary = binary or locate_terraform()
    self.reporter = reporter or Reporter()
    self.driver_factory = driver_factory or TerraformDriver
    self.env = env
    self.provider_filename = provider_filename
    self.provider_name = provider_name
    self.provider_blocks = provider_blocks

  def run(self, case):
    """Run a single case, failing it through the reporter on error."""
    _LOGGER.info('running %s case %s', type(self).__name__, case.name)
    cleanup = CleanupStack()
    try:
      try:
        self._run(case, cleanup)
      except ScenarioFailure:
        raise
      except TerraformTestError as e:
        message = '{}: {}'.format(case.name, e.args[0] if e.args else e)
        if e.cmd_error and e.cmd_error not in message:
          message += '\nstderr:\n{}'.format(e.cmd_error)
        self.reporter.fail(message)
    finally:
      errors = cleanup.drain()
    if errors:
      self.reporter.fail('{}: cleanup failed: {}'.format(
          case.name, '; '.join(str(e) for e in errors)))

  def _run(self, case, cleanup):
    raise NotImplementedError

  def _install_provider(self, module_input, cleanup):
    provider = ProviderFile(
        os.path.join(module_input.directory, self.provider_filename),
        self.provider_name, self.provider_blocks)
    cleanup.push(provider.delete)
    provider.create()
    return provider

  def _driver(self, module_input):
    return self.driver_factory(module_input.directory, self.binary, self.env)

  def _init(self, tf, module_input):
    return tf.init(reconfigure=module_input.reconfigure,
                   upgrade=module_input.upgrade)

  def _apply(self, tf, module_input):
    tf_vars, env = module_input.command_vars()
    return tf.apply(tf_vars=tf_vars, env=env)

  def _destroy(self, tf, module_input):
    tf_vars, env = module_input.command_vars()
    return tf.destroy(tf_vars=tf_vars, env=env)

  def _deploy(self, tf, module_input, cleanup, idempotent=True):
    """Register destroy for the module, then init and apply it."""
    cleanup.push(self._destroy, tf, module_input)
    self._init(tf, module_input)
    self._apply(tf, module_input)
    if not idempotent:
      return
    changes = count_changes(self._apply(tf, module_input))
    if changes:
      self.reporter.fail(
          '{}: second apply is not idempotent, {} resource changes'.format(
              module_input.directory, changes))


class DryScenario(Scenario):
  """Init, validate and plan a module, comparing planned resource addresses.

  Args:
    strict_warnings: fail on validation warnings, not only on errors.
    timeout: optional timeout in seconds for validate and plan decoding.
  """

  def __init__(self, strict_warnings=True, timeout=None, **kw):
    super(DryScenario, self).__init__(**kw)
    self.strict_warnings = strict_warnings
    self.timeout = timeout

  def _run(self, case, cleanup):
    module_input = case.input
    self._install_provider(module_input, cleanup)
    tf = self._driver(module_input)
    self._init(tf, module_input)
    self._check_validate(case, tf.validate(timeout=self.timeout))
    plan_path = os.path.join(module_input.directory, case.plan_out)
    cleanup.push(_remove_file, plan_path)
    tf_vars, env = module_input.command_vars()
    tf.plan(out=plan_path, tf_vars=tf_vars, env=env)
    plan = tf.show_plan_file(plan_path, timeout=self.timeout)
    got = parse_resource_addresses(plan)
    diff = render_diff(case.want or (), got)
    if diff:
      self.reporter.fail('{} = Unexpected result, (-want +got)\n{}\n'.format(
          case.name, diff))

  def _check_validate(self, case, result):
    failed = not result.valid or result.error_count
    if self.strict_warnings and result.warning_count:
      failed = True
    if result.diagnostics and (failed or result.warning_count):
      for diagnostic in result.diagnostics:
        self.reporter.log('%s', json.dumps(diagnostic, sort_keys=True))
    if failed:
      self.reporter.fail('{}: configuration is not valid'.format(case.name))


class UnitScenario(Scenario):
  "Apply a single module twice, checking idempotency, then destroy it."

  def _run(self, case, cleanup):
    module_input = case.input
    self._install_provider(module_input, cleanup)
    self._deploy(self._driver(module_input), module_input, cleanup)


class IntegrationScenario(Scenario):
  """Deploy modules in order, wiring each module's outputs into the next.

  The first module is applied once, following modules are applied twice to
  check idempotency. Destroys run in reverse deployment order.
  """

  def _run(self, case, cleanup):
    inputs = list(case.inputs)
    if not inputs:
      raise TerraformTestError('no modules in case {}'.format(case.name))
    wires = case.wires
    if wires is None:
      wires = [DEFAULT_WIRES] * (len(inputs) - 1)
    elif len(wires) != len(inputs) - 1:
      raise TerraformTestError(
          'case {} has {} wire sets for {} modules'.format(
              case.name, len(wires), len(inputs)))
    for module_input in inputs:
      self._install_provider(module_input, cleanup)
    outputs = None
    for i, module_input in enumerate(inputs):
      if i:
        wire_outputs(outputs, module_input, wires[i - 1])
      tf = self._driver(module_input)
      self._deploy(tf, module_input, cleanup, idempotent=i > 0)
      if i < len(inputs) - 1:
        outputs = tf.output()


def wire_outputs(outputs, module_input, wires):
  """Copy upstream output values into a module's variables."""
  for wire in wires:
    value = outputs.get_output(wire.output)
    _LOGGER.debug('wiring %s into %s as %s', wire.output,
                  module_input.directory, wire.input)
    module_input.tf_vars[wire.input] = value


def _remove_file(path):
  try:
    os.unlink(path)
  except FileNotFoundError:
    pass
